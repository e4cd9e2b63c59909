"""Provision one identity (account plus profile) per legacy contributor."""

from __future__ import annotations

import enum
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from donations.config import get_settings
from donations.models import User
from donations.services.identity_provider import (
    IdentityAccount,
    IdentityProviderClient,
    IdentityProviderError,
    ProviderErrorKind,
)

logger = logging.getLogger(__name__)


class IdentityDirectory(Protocol):
    def list_accounts(self, *, page: int = 1, per_page: int = 1000) -> list[IdentityAccount]:
        ...

    def create_account(self, email: str, *, metadata: Mapping[str, Any] | None = None) -> IdentityAccount:
        ...

    def delete_account(self, account_id: str) -> None:
        ...


class DirectoryUnavailableError(RuntimeError):
    """Raised when the identity directory cannot be listed."""


class ProvisioningError(RuntimeError):
    """Raised when a single contributor could not be provisioned."""

    def __init__(self, contributor_id: int, reason: str, *, transient: bool = False) -> None:
        super().__init__(f"Contributor {contributor_id}: {reason}")
        self.contributor_id = contributor_id
        self.reason = reason
        # True when the provider looked unavailable rather than refusing this contributor.
        self.transient = transient


class ProvisioningOutcome(str, enum.Enum):
    CREATED = "created"
    EXISTING = "existing"
    RECOVERED = "recovered"


@dataclass(frozen=True)
class ProvisioningResult:
    identity_id: uuid.UUID
    lookup_key: str
    outcome: ProvisioningOutcome


def contributor_lookup_key(contributor_id: int, domain: str) -> str:
    return f"contributor{contributor_id:04d}@{domain}".lower()


def next_delay(attempt: int, base_seconds: float = 1.0) -> float:
    """Backoff before retry number ``attempt + 1`` (0 -> base, 1 -> 2x base, ...)."""

    return base_seconds * (2 ** attempt)


class DirectoryIndex:
    """In-memory view of the identity directory keyed by lookup email."""

    def __init__(self, provider: IdentityDirectory, *, page_size: int = 1000) -> None:
        self._provider = provider
        self._page_size = max(1, min(page_size, 1000))
        self._accounts: dict[str, IdentityAccount] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> "DirectoryIndex":
        accounts: dict[str, IdentityAccount] = {}
        page = 1
        while True:
            try:
                batch = self._provider.list_accounts(page=page, per_page=self._page_size)
            except IdentityProviderError as exc:
                raise DirectoryUnavailableError(f"Unable to list identity directory page {page}: {exc}") from exc
            for account in batch:
                if account.email:
                    accounts[account.email.lower()] = account
            if len(batch) < self._page_size:
                break
            page += 1

        self._accounts = accounts
        self._loaded = True
        logger.debug("Loaded %d identities across %d directory pages", len(accounts), page)
        return self

    def refresh(self) -> "DirectoryIndex":
        return self.load()

    def get(self, lookup_key: str) -> IdentityAccount | None:
        return self._accounts.get(lookup_key.lower())

    def add(self, account: IdentityAccount) -> None:
        self._accounts[account.email.lower()] = account

    def __contains__(self, lookup_key: object) -> bool:
        return isinstance(lookup_key, str) and lookup_key.lower() in self._accounts

    def __len__(self) -> int:
        return len(self._accounts)

    def __iter__(self) -> Iterator[IdentityAccount]:
        return iter(self._accounts.values())


class IdentityProvisioner:
    """Resolve or create the identity of a legacy contributor.

    The lookup email derived from the contributor id is the only de-duplication
    key, so running the same contributor twice never yields two identities.
    Account creation is retried on transient provider failures with exponential
    backoff; a 5xx first re-checks the directory because the provider may have
    created the account before failing.
    """

    def __init__(
        self,
        provider: IdentityDirectory,
        session: Session,
        *,
        email_domain: str | None = None,
        max_retries: int | None = None,
        backoff_base_seconds: float | None = None,
        page_size: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self._provider = provider
        self._session = session
        self._email_domain = email_domain or settings.contributor_email_domain
        self._max_retries = settings.identity_max_retries if max_retries is None else max(0, max_retries)
        self._backoff_base = (
            settings.identity_backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )
        self._page_size = page_size or settings.identity_page_size
        self._sleep = sleep

    @classmethod
    def from_settings(cls, session: Session, **kwargs: Any) -> "IdentityProvisioner":
        return cls(IdentityProviderClient(), session, **kwargs)

    def load_directory(self) -> DirectoryIndex:
        return DirectoryIndex(self._provider, page_size=self._page_size).load()

    def lookup_key(self, contributor_id: int) -> str:
        return contributor_lookup_key(contributor_id, self._email_domain)

    def provision(
        self,
        contributor_id: int,
        display_name: str,
        directory: DirectoryIndex | None = None,
    ) -> ProvisioningResult:
        lookup_key = self.lookup_key(contributor_id)
        if directory is None:
            directory = self.load_directory()

        existing = directory.get(lookup_key)
        if existing is not None:
            identity_id = self._ensure_profile(existing, contributor_id, display_name, created=False)
            return ProvisioningResult(identity_id, lookup_key, ProvisioningOutcome.EXISTING)

        account, outcome, created = self._create_account(contributor_id, display_name, lookup_key, directory)
        identity_id = self._ensure_profile(account, contributor_id, display_name, created=created)
        directory.add(account)
        logger.info("Provisioned contributor %s as %s (%s)", contributor_id, lookup_key, outcome.value)
        return ProvisioningResult(identity_id, lookup_key, outcome)

    def _create_account(
        self,
        contributor_id: int,
        display_name: str,
        lookup_key: str,
        directory: DirectoryIndex,
    ) -> tuple[IdentityAccount, ProvisioningOutcome, bool]:
        """Create the account; the flag tells whether this call is what created it."""

        metadata = IdentityProviderClient.build_import_metadata(contributor_id, display_name)
        attempt = 0
        while True:
            try:
                account = self._provider.create_account(lookup_key, metadata=metadata)
                return account, ProvisioningOutcome.CREATED, True
            except IdentityProviderError as exc:
                if exc.kind is ProviderErrorKind.CONFLICT:
                    try:
                        recovered = self._recheck(directory, lookup_key)
                    except DirectoryUnavailableError as refresh_exc:
                        raise ProvisioningError(
                            contributor_id, f"conflict could not be resolved: {refresh_exc}", transient=True
                        ) from exc
                    if recovered is not None:
                        logger.info("Contributor %s already registered; reusing %s", contributor_id, recovered.id)
                        return recovered, ProvisioningOutcome.RECOVERED, False
                    raise ProvisioningError(
                        contributor_id, f"provider reported a conflict but {lookup_key} was not found"
                    ) from exc

                if exc.kind is not ProviderErrorKind.TRANSIENT:
                    raise ProvisioningError(contributor_id, str(exc)) from exc

                if exc.is_server_error:
                    try:
                        recovered = self._recheck(directory, lookup_key)
                    except DirectoryUnavailableError as refresh_exc:
                        logger.warning(
                            "Could not refresh identity directory while resolving %s: %s", lookup_key, refresh_exc
                        )
                        recovered = None
                    if recovered is not None:
                        logger.info(
                            "Contributor %s was created despite a %s response; reusing %s",
                            contributor_id,
                            exc.status_code,
                            recovered.id,
                        )
                        return recovered, ProvisioningOutcome.RECOVERED, True

                if attempt >= self._max_retries:
                    raise ProvisioningError(
                        contributor_id, f"gave up after {attempt + 1} attempts: {exc}", transient=True
                    ) from exc

                delay = next_delay(attempt, self._backoff_base)
                logger.info(
                    "Transient failure creating contributor %s (attempt %d/%d); retrying in %.1fs: %s",
                    contributor_id,
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                    exc,
                )
                self._sleep(delay)
                attempt += 1

    def _recheck(self, directory: DirectoryIndex, lookup_key: str) -> IdentityAccount | None:
        directory.refresh()
        return directory.get(lookup_key)

    def _ensure_profile(
        self,
        account: IdentityAccount,
        contributor_id: int,
        display_name: str,
        *,
        created: bool,
    ) -> uuid.UUID:
        try:
            identity_id = uuid.UUID(str(account.id))
        except ValueError as exc:
            self._discard_account(account, contributor_id, created)
            raise ProvisioningError(contributor_id, f"provider returned invalid id '{account.id}'") from exc

        try:
            profile = self._session.get(User, identity_id)
            if profile is None:
                first_name, _, last_name = display_name.strip().partition(" ")
                profile = User(
                    id=identity_id,
                    email=account.email or self.lookup_key(contributor_id),
                    role="donor",
                    first_name=first_name or None,
                    last_name=last_name.strip() or None,
                    language="ar",
                    is_active=True,
                    email_verified=True,
                    legacy_contributor_id=contributor_id,
                )
                self._session.add(profile)
                self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            self._discard_account(account, contributor_id, created)
            raise ProvisioningError(contributor_id, f"profile could not be saved: {exc}") from exc
        return identity_id

    def _discard_account(self, account: IdentityAccount, contributor_id: int, created: bool) -> None:
        if not created:
            return
        try:
            self._provider.delete_account(account.id)
        except IdentityProviderError:
            logger.exception(
                "Failed to delete account %s after profile failure for contributor %s",
                account.id,
                contributor_id,
            )
        else:
            logger.warning("Deleted account %s after profile failure for contributor %s", account.id, contributor_id)


__all__ = [
    "DirectoryIndex",
    "DirectoryUnavailableError",
    "IdentityDirectory",
    "IdentityProvisioner",
    "ProvisioningError",
    "ProvisioningOutcome",
    "ProvisioningResult",
    "contributor_lookup_key",
    "next_delay",
]
