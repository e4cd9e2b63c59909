from __future__ import annotations

import enum
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import requests

from donations.config import get_settings

RequestFunc = Callable[[str, str, dict[str, str], dict[str, Any] | None, dict[str, Any] | None, int], Any]

_CONFLICT_MARKERS = ("already been registered", "already registered", "already exists", "email_exists")


class ProviderErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    FATAL = "fatal"


def classify_provider_error(status_code: int | None, message: str | None = None) -> ProviderErrorKind:
    """Map a provider failure onto the three cases the retry logic understands.

    ``status_code`` is ``None`` when no response was received at all.
    """

    text = (message or "").lower()
    if any(marker in text for marker in _CONFLICT_MARKERS):
        return ProviderErrorKind.CONFLICT
    if status_code is None or status_code == 429 or status_code >= 500:
        return ProviderErrorKind.TRANSIENT
    if status_code in (409, 422):
        return ProviderErrorKind.CONFLICT
    return ProviderErrorKind.FATAL


class IdentityProviderError(RuntimeError):
    """Raised when an identity provider admin call fails."""

    def __init__(self, message: str, *, status_code: int | None = None, kind: ProviderErrorKind | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.kind = kind or classify_provider_error(status_code, message)

    @property
    def is_transient(self) -> bool:
        return self.kind is ProviderErrorKind.TRANSIENT

    @property
    def is_conflict(self) -> bool:
        return self.kind is ProviderErrorKind.CONFLICT

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


@dataclass(frozen=True)
class IdentityProviderConfig:
    base_url: str
    service_key: str
    timeout_seconds: int = 30


@dataclass(frozen=True)
class IdentityAccount:
    id: str
    email: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


class IdentityProviderClient:
    """Thin wrapper around the identity provider's admin users REST API."""

    def __init__(
        self,
        *,
        config: IdentityProviderConfig | None = None,
        request_func: RequestFunc | None = None,
    ) -> None:
        if config is None:
            settings = get_settings()
            config = IdentityProviderConfig(
                base_url=settings.identity_provider_url or "",
                service_key=settings.identity_service_key or "",
                timeout_seconds=settings.identity_timeout_seconds,
            )

        base_url = (config.base_url or "").strip()
        service_key = (config.service_key or "").strip()
        if not base_url:
            raise ValueError("Identity provider URL is required to initialize IdentityProviderClient.")
        if not service_key:
            raise ValueError("Identity service key is required to initialize IdentityProviderClient.")

        base = base_url if base_url.startswith("http") else f"https://{base_url}"
        self._base_url = base.rstrip("/")
        self._service_key = service_key
        self._timeout = max(1, config.timeout_seconds)
        self._request_func = request_func

    def list_accounts(self, *, page: int = 1, per_page: int = 1000) -> list[IdentityAccount]:
        payload = self._request(
            "GET",
            "/auth/v1/admin/users",
            params={"page": page, "per_page": per_page},
        )
        users: Any = payload.get("users") if isinstance(payload, Mapping) else payload
        if not isinstance(users, list):
            raise IdentityProviderError(
                "Identity provider listing did not include a users array.",
                kind=ProviderErrorKind.FATAL,
            )
        return [self._parse_account(user) for user in users if isinstance(user, Mapping)]

    def create_account(self, email: str, *, metadata: Mapping[str, Any] | None = None) -> IdentityAccount:
        body = {
            "email": email,
            "password": secrets.token_urlsafe(24),
            "email_confirm": True,
            "user_metadata": dict(metadata or {}),
        }
        payload = self._request("POST", "/auth/v1/admin/users", json_payload=body)
        user = payload.get("user", payload) if isinstance(payload, Mapping) else None
        if not isinstance(user, Mapping) or not user.get("id"):
            raise IdentityProviderError(
                "Identity provider response is missing the created account id.",
                kind=ProviderErrorKind.FATAL,
            )
        return self._parse_account(user)

    def delete_account(self, account_id: str) -> None:
        self._request("DELETE", f"/auth/v1/admin/users/{account_id}", expected_statuses=(200, 204))

    @staticmethod
    def build_import_metadata(contributor_id: int, display_name: str) -> dict[str, Any]:
        return {
            "contributor_id": contributor_id,
            "contributor_name": display_name,
            "created_by_import": True,
            "import_date": datetime.now(timezone.utc).isoformat(),
        }

    @staticmethod
    def _parse_account(payload: Mapping[str, Any]) -> IdentityAccount:
        metadata = payload.get("user_metadata")
        return IdentityAccount(
            id=str(payload.get("id")),
            email=str(payload.get("email") or "").lower(),
            metadata=metadata if isinstance(metadata, Mapping) else {},
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_payload: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        expected_statuses: tuple[int, ...] = (200, 201),
    ) -> Any:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
            "Content-Type": "application/json",
        }
        try:
            response = self._dispatch_request(method, url, headers, json_payload, params)
        except IdentityProviderError:
            raise
        except requests.RequestException as exc:
            raise IdentityProviderError(
                f"Identity provider request to {path} failed: {exc}",
                kind=ProviderErrorKind.TRANSIENT,
            ) from exc

        if response.status_code not in expected_statuses:
            detail = self._extract_detail(response)
            raise IdentityProviderError(
                f"Identity provider call {method} {path} failed with {response.status_code}: {detail}",
                status_code=response.status_code,
                kind=classify_provider_error(response.status_code, detail),
            )

        if response.status_code == 204:
            return None

        try:
            return response.json()
        except ValueError:  # pragma: no cover - non-json responses
            return None

    def _dispatch_request(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        json_payload: Mapping[str, Any] | None,
        params: Mapping[str, Any] | None,
    ):
        if self._request_func is not None:
            return self._request_func(
                method,
                url,
                headers,
                json_payload and dict(json_payload),
                params and dict(params),
                self._timeout,
            )

        return requests.request(
            method,
            url,
            headers=headers,
            json=json_payload,
            params=params,
            timeout=self._timeout,
        )

    @staticmethod
    def _extract_detail(response: Any) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, Mapping):
            message = (
                payload.get("msg")
                or payload.get("message")
                or payload.get("error_description")
                or payload.get("error")
            )
            if message:
                return str(message)
        text = getattr(response, "text", None)
        if text:
            return str(text).strip()
        reason = getattr(response, "reason", None)
        if reason:
            return str(reason)
        return "unknown error"


__all__ = [
    "IdentityAccount",
    "IdentityProviderClient",
    "IdentityProviderConfig",
    "IdentityProviderError",
    "ProviderErrorKind",
    "classify_provider_error",
]
