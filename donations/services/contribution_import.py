"""End-to-end historical contribution import: aggregate, provision, write, notify."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from donations.config import Settings, get_settings
from donations.services.contribution_csv import ContributorRecord, RowRejection, aggregate_contributions
from donations.services.contribution_notifications import ContributionNotificationDispatcher
from donations.services.contribution_writer import BatchFailure, ContributionWriter, ImportAbortedError
from donations.services.identity_provisioning import (
    DirectoryUnavailableError,
    IdentityDirectory,
    IdentityProvisioner,
    ProvisioningError,
    ProvisioningOutcome,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContributorFailure:
    contributor_id: int
    display_name: str
    reason: str


@dataclass
class ImportSummary:
    dry_run: bool
    rows_read: int
    rows_rejected: int
    cases_found: int
    contributors_found: int
    contributors_created: int = 0
    contributors_existing: int = 0
    contributors_recovered: int = 0
    contributors_failed: int = 0
    cases_created: int = 0
    cases_existing: int = 0
    existing_case_ids: list[str] = field(default_factory=list)
    contributions_inserted: int = 0
    contributions_existing: int = 0
    contributions_skipped: int = 0
    contributions_failed: int = 0
    notifications_created: int = 0
    earliest_contribution_date: date | None = None
    rejected_rows: list[RowRejection] = field(default_factory=list)
    failed_contributors: list[ContributorFailure] = field(default_factory=list)
    failed_batches: list[BatchFailure] = field(default_factory=list)


class ContributionImportRunner:
    def __init__(
        self,
        session: Session,
        provider: IdentityDirectory,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._provisioner = IdentityProvisioner(
            provider,
            session,
            email_domain=self._settings.contributor_email_domain,
            max_retries=self._settings.identity_max_retries,
            backoff_base_seconds=self._settings.identity_backoff_base_seconds,
            page_size=self._settings.identity_page_size,
            sleep=sleep,
        )
        self._writer = ContributionWriter(session, batch_size=self._settings.import_batch_size)

    def run(self, csv_text: str, *, dry_run: bool = False, notify_donors: bool = False) -> ImportSummary:
        aggregation = aggregate_contributions(csv_text)
        dates = [aggregate.earliest_date for aggregate in aggregation.cases.values() if aggregate.earliest_date]
        summary = ImportSummary(
            dry_run=dry_run,
            rows_read=aggregation.total_rows,
            rows_rejected=len(aggregation.rejected_rows),
            cases_found=len(aggregation.cases),
            contributors_found=len(aggregation.contributors),
            earliest_contribution_date=min(dates) if dates else None,
            rejected_rows=list(aggregation.rejected_rows),
        )

        try:
            plan = self._writer.plan(aggregation.cases)
            lookups = None if dry_run else self._writer.resolve_lookups()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ImportAbortedError(f"Database unavailable while preparing import: {exc}") from exc

        summary.existing_case_ids = plan.existing_case_ids
        summary.cases_existing = len(summary.existing_case_ids)
        summary.contributions_existing = plan.already_imported
        if dry_run:
            logger.info(
                "Dry run: %d cases (%d already imported), %d contributors, %d rejected rows",
                summary.cases_found,
                summary.cases_existing,
                summary.contributors_found,
                summary.rows_rejected,
            )
            return summary

        # Only contributors with rows still to store need an identity.
        referenced = plan.contributor_ids()
        needed = [record for record in aggregation.contributors.values() if record.contributor_id in referenced]
        identities = self._provision_contributors(needed, summary)

        written = self._writer.write(aggregation.cases, identities, lookups, plan=plan)
        summary.cases_created = len(written.case_ids)
        summary.contributions_inserted = written.contributions_inserted
        summary.contributions_skipped = written.contributions_skipped
        summary.contributions_failed = written.contributions_failed
        summary.failed_batches = list(written.failed_batches)

        if notify_donors and written.imported:
            dispatcher = ContributionNotificationDispatcher(self._session, batch_size=self._settings.import_batch_size)
            summary.notifications_created = dispatcher.notify_imported(written.imported)

        logger.info(
            "Import finished: %d cases created, %d contributions inserted, %d contributors failed, %d batches failed",
            summary.cases_created,
            summary.contributions_inserted,
            summary.contributors_failed,
            len(summary.failed_batches),
        )
        return summary

    def _provision_contributors(self, needed: list[ContributorRecord], summary: ImportSummary) -> dict[int, uuid.UUID]:
        """Provision contributors serially.

        Raises :class:`ImportAbortedError` before anything is written when the
        provider looks unavailable: too many transient failures in a row, or
        every contributor failed transiently.
        """

        identities: dict[int, uuid.UUID] = {}
        if not needed:
            return identities

        try:
            directory = self._provisioner.load_directory()
        except DirectoryUnavailableError as exc:
            raise ImportAbortedError(f"Identity directory unavailable: {exc}") from exc
        logger.info("Loaded %d existing identities; provisioning %d contributors", len(directory), len(needed))

        limit = self._settings.import_max_consecutive_transient_failures
        consecutive_transient = 0
        for position, record in enumerate(needed):
            try:
                result = self._provisioner.provision(record.contributor_id, record.display_name, directory)
            except ProvisioningError as exc:
                logger.warning("Could not provision contributor %s: %s", record.contributor_id, exc.reason)
                summary.failed_contributors.append(
                    ContributorFailure(record.contributor_id, record.display_name, exc.reason)
                )
                consecutive_transient = consecutive_transient + 1 if exc.transient else 0
                if consecutive_transient >= limit:
                    raise ImportAbortedError(
                        f"Identity provider unavailable: {consecutive_transient} contributors in a row failed "
                        f"transiently (last: {exc.reason})"
                    ) from exc
            else:
                consecutive_transient = 0
                record.identity_id = result.identity_id
                identities[record.contributor_id] = result.identity_id
                if result.outcome is ProvisioningOutcome.CREATED:
                    summary.contributors_created += 1
                elif result.outcome is ProvisioningOutcome.RECOVERED:
                    summary.contributors_recovered += 1
                else:
                    summary.contributors_existing += 1

            pause = self._settings.import_contributor_pause_seconds
            if pause > 0 and position < len(needed) - 1:
                self._sleep(pause)
        summary.contributors_failed = len(summary.failed_contributors)

        if not identities and consecutive_transient == len(needed):
            raise ImportAbortedError(
                f"Identity provider unavailable: all {len(needed)} contributors failed transiently"
            )
        return identities


__all__ = ["ContributionImportRunner", "ContributorFailure", "ImportSummary"]
