"""Persist aggregated historical contributions as cases, contributions and approval rows."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Callable, Iterable, Mapping, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from donations.config import get_settings
from donations.models import Case, CaseCategory, Contribution, ContributionApprovalStatus, PaymentMethod
from donations.services.approval_reconciler import apply_case_amount_delta
from donations.services.contribution_csv import (
    AMOUNT_QUANTUM,
    UNKNOWN_CONTRIBUTOR_ID,
    CaseAggregate,
    ContributionRow,
    english_case_title,
)
from donations.services.contribution_notifications import resolve_admin_recipients

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_METHOD_CODE = "cash"
IMPORTED_CASE_STATUS = "published"
_EXISTING_LOOKUP_CHUNK = 500

# Category key -> fragment expected in the category's (English) name.
_CATEGORY_NAME_FRAGMENTS: tuple[tuple[str, str], ...] = (
    ("medical", "medical"),
    ("educational", "educational"),
    ("housing", "housing"),
    ("appliances", "appliance"),
    ("emergency", "emergency"),
    ("livelihood", "livelihood"),
    ("community", "community"),
    ("basic_needs", "basic"),
    ("other", "other"),
)


class ImportAbortedError(RuntimeError):
    """Raised when the import cannot continue at all (missing lookups, case insert failure)."""


@dataclass(frozen=True)
class WriteLookups:
    category_ids: Mapping[str, uuid.UUID]
    default_category_id: uuid.UUID | None
    payment_method_id: uuid.UUID
    created_by: uuid.UUID | None

    def category_for(self, key: str) -> uuid.UUID | None:
        return self.category_ids.get(key) or self.default_category_id


@dataclass(frozen=True)
class BatchFailure:
    batch_number: int
    size: int
    error: str


@dataclass(frozen=True)
class ImportedContribution:
    contribution_id: uuid.UUID
    donor_id: uuid.UUID
    case_id: uuid.UUID
    amount: Decimal
    contributed_at: datetime
    case_title_en: str | None
    case_title_ar: str | None


@dataclass
class WriteResult:
    case_ids: dict[str, uuid.UUID] = field(default_factory=dict)
    existing_case_ids: list[str] = field(default_factory=list)
    contributions_inserted: int = 0
    contributions_existing: int = 0
    contributions_skipped: int = 0
    contributions_failed: int = 0
    failed_batches: list[BatchFailure] = field(default_factory=list)
    imported: list[ImportedContribution] = field(default_factory=list)
    amounts_seeded: bool = True


@dataclass(frozen=True)
class PlannedRow:
    aggregate: CaseAggregate
    row: ContributionRow
    import_key: str


@dataclass
class ImportPlan:
    """What a write would do: cases to create and CSV rows not stored yet."""

    existing_cases: dict[str, uuid.UUID] = field(default_factory=dict)
    new_cases: list[CaseAggregate] = field(default_factory=list)
    rows: list[PlannedRow] = field(default_factory=list)
    already_imported: int = 0

    @property
    def existing_case_ids(self) -> list[str]:
        return list(self.existing_cases)

    def contributor_ids(self) -> set[int]:
        return {planned.row.contributor_id for planned in self.rows}


@dataclass(frozen=True)
class _PendingContribution:
    planned: PlannedRow
    case_id: uuid.UUID
    donor_id: uuid.UUID


def contribution_import_key(external_id: str, row: ContributionRow, occurrence: int) -> str:
    """Stable identity of a CSV row; ``occurrence`` separates otherwise identical rows of a case."""

    contributed = row.contributed_on.isoformat() if row.contributed_on else ""
    amount = row.amount.quantize(AMOUNT_QUANTUM)
    return f"{external_id}|{row.contributor_id}|{amount}|{contributed}|{occurrence}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_timestamp(value: date | None) -> datetime | None:
    if value is None:
        return None
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _chunks(items: Sequence, size: int) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class ContributionWriter:
    def __init__(
        self,
        session: Session,
        *,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._batch_size = max(1, batch_size or get_settings().import_batch_size)
        self._clock = clock

    def resolve_lookups(self) -> WriteLookups:
        categories = self._session.scalars(
            select(CaseCategory).where(CaseCategory.is_active.is_(True)).order_by(CaseCategory.name)
        ).all()
        category_ids: dict[str, uuid.UUID] = {}
        for category in categories:
            name = (category.name or "").lower()
            for key, fragment in _CATEGORY_NAME_FRAGMENTS:
                if fragment in name:
                    category_ids.setdefault(key, category.id)
                    break
        default_category_id = category_ids.get("other") or (categories[0].id if categories else None)

        payment_method = self._session.scalars(
            select(PaymentMethod).where(
                PaymentMethod.code == DEFAULT_PAYMENT_METHOD_CODE,
                PaymentMethod.is_active.is_(True),
            )
        ).first()
        if payment_method is None:
            payment_method = self._session.scalars(
                select(PaymentMethod)
                .where(PaymentMethod.is_active.is_(True))
                .order_by(PaymentMethod.sort_order, PaymentMethod.name)
            ).first()
        if payment_method is None:
            raise ImportAbortedError("No active payment method is configured; cannot import contributions.")

        admins = resolve_admin_recipients(self._session)
        return WriteLookups(
            category_ids=category_ids,
            default_category_id=default_category_id,
            payment_method_id=payment_method.id,
            created_by=admins[0] if admins else None,
        )

    def find_existing_cases(self, external_ids: Iterable[str]) -> dict[str, uuid.UUID]:
        ids = list(dict.fromkeys(external_ids))
        existing: dict[str, uuid.UUID] = {}
        for chunk in _chunks(ids, _EXISTING_LOOKUP_CHUNK):
            rows = self._session.execute(
                select(Case.external_id, Case.id).where(Case.external_id.in_(list(chunk)))
            ).all()
            existing.update({external_id: case_id for external_id, case_id in rows})
        return existing

    def plan(self, cases: Mapping[str, CaseAggregate]) -> ImportPlan:
        """Split the aggregation into cases to create and rows not stored by an earlier run.

        Rows of already-imported cases are matched by import key, so rows that
        a partial run skipped (failed contributor, failed batch) are picked up
        again while stored rows are never duplicated.
        """

        found = self.find_existing_cases(cases.keys())
        plan = ImportPlan(
            existing_cases={external_id: found[external_id] for external_id in cases if external_id in found}
        )
        stored_keys = self._stored_import_keys(plan.existing_cases.values())

        for external_id, aggregate in cases.items():
            if external_id not in plan.existing_cases:
                plan.new_cases.append(aggregate)
            occurrences: dict[str, int] = {}
            for row in aggregate.contributions:
                base = contribution_import_key(external_id, row, 0)
                occurrence = occurrences.get(base, 0)
                occurrences[base] = occurrence + 1
                import_key = contribution_import_key(external_id, row, occurrence)
                if import_key in stored_keys:
                    plan.already_imported += 1
                    continue
                plan.rows.append(PlannedRow(aggregate, row, import_key))
        return plan

    def _stored_import_keys(self, case_ids: Iterable[uuid.UUID]) -> set[str]:
        ids = list(case_ids)
        keys: set[str] = set()
        for chunk in _chunks(ids, _EXISTING_LOOKUP_CHUNK):
            keys.update(
                self._session.scalars(
                    select(Contribution.import_key).where(
                        Contribution.case_id.in_(list(chunk)),
                        Contribution.import_key.is_not(None),
                    )
                )
            )
        return keys

    def write(
        self,
        cases: Mapping[str, CaseAggregate],
        identities: Mapping[int, uuid.UUID],
        lookups: WriteLookups | None = None,
        plan: ImportPlan | None = None,
    ) -> WriteResult:
        """Create new cases and the contributions not stored yet, then bring case amounts in line.

        New cases get their funded amount seeded from what was persisted;
        existing cases are shifted by the amount of the rows added to them.
        """

        lookups = lookups or self.resolve_lookups()
        plan = plan or self.plan(cases)
        result = WriteResult(
            existing_case_ids=plan.existing_case_ids,
            contributions_existing=plan.already_imported,
        )
        if plan.existing_cases:
            logger.info(
                "%d cases were already imported; %d of their rows are stored",
                len(plan.existing_cases),
                plan.already_imported,
            )

        result.case_ids = self._write_cases(plan.new_cases, lookups)
        case_ids = {**plan.existing_cases, **result.case_ids}

        pending: list[_PendingContribution] = []
        for planned in plan.rows:
            row = planned.row
            donor_id = identities.get(row.contributor_id)
            if donor_id is None:
                logger.warning(
                    "No identity for contributor %s (%s); skipping CSV line %d",
                    row.contributor_id,
                    row.contributor_name,
                    row.line_number,
                )
                result.contributions_skipped += 1
                continue
            pending.append(_PendingContribution(planned, case_ids[planned.aggregate.external_id], donor_id))

        new_totals: dict[uuid.UUID, Decimal] = {case_id: Decimal("0") for case_id in result.case_ids.values()}
        added_to_existing: dict[uuid.UUID, Decimal] = {}
        for batch_number, batch in enumerate(_chunks(pending, self._batch_size), start=1):
            try:
                imported = self._write_batch(batch, lookups)
            except SQLAlchemyError as exc:
                self._session.rollback()
                logger.error(
                    "Contribution batch %d (%d rows) failed; continuing with the next batch",
                    batch_number,
                    len(batch),
                    exc_info=True,
                )
                result.failed_batches.append(BatchFailure(batch_number, len(batch), str(exc)))
                result.contributions_failed += len(batch)
                continue

            result.contributions_inserted += len(imported)
            result.imported.extend(imported)
            for item in imported:
                if item.case_id in new_totals:
                    new_totals[item.case_id] += item.amount
                else:
                    added_to_existing[item.case_id] = added_to_existing.get(item.case_id, Decimal("0")) + item.amount
            logger.info(
                "Inserted contribution batch %d (%d/%d)",
                batch_number,
                result.contributions_inserted,
                len(pending),
            )

        result.amounts_seeded = self._seed_case_amounts(new_totals, added_to_existing)
        return result

    def _write_cases(self, aggregates: Sequence[CaseAggregate], lookups: WriteLookups) -> dict[str, uuid.UUID]:
        if not aggregates:
            return {}

        now = self._clock()
        rows: list[Case] = []
        for aggregate in aggregates:
            title_en = english_case_title(aggregate.title_ar)
            rows.append(
                Case(
                    id=uuid.uuid4(),
                    external_id=aggregate.external_id,
                    title_en=title_en,
                    title_ar=aggregate.title_ar or None,
                    description_en=f"Support case: {aggregate.title_ar}",
                    description_ar=aggregate.title_ar or None,
                    type="one-time",
                    priority="medium",
                    status=IMPORTED_CASE_STATUS,
                    category_id=lookups.category_for(aggregate.category),
                    target_amount=aggregate.total_amount,
                    current_amount=Decimal("0"),
                    created_by=lookups.created_by,
                    created_at=_as_timestamp(aggregate.earliest_date) or now,
                    updated_at=now,
                )
            )

        # Rows are built in aggregate order, so pairing by position is exact.
        case_ids = {aggregate.external_id: case.id for aggregate, case in zip(aggregates, rows)}
        try:
            self._session.add_all(rows)
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ImportAbortedError(f"Failed to create {len(rows)} cases: {exc}") from exc

        logger.info("Created %d cases", len(case_ids))
        return case_ids

    def _write_batch(
        self,
        batch: Sequence[_PendingContribution],
        lookups: WriteLookups,
    ) -> list[ImportedContribution]:
        now = self._clock()
        imported: list[ImportedContribution] = []
        rows: list[Contribution] = []
        for item in batch:
            row = item.planned.row
            aggregate = item.planned.aggregate
            contributed_at = _as_timestamp(row.contributed_on) or now
            contribution = Contribution(
                id=uuid.uuid4(),
                type="donation",
                amount=row.amount,
                payment_method_id=lookups.payment_method_id,
                status="approved",
                anonymous=row.contributor_id == UNKNOWN_CONTRIBUTOR_ID,
                donor_id=item.donor_id,
                case_id=item.case_id,
                import_key=item.planned.import_key,
                created_at=contributed_at,
                updated_at=contributed_at,
            )
            contribution.approval_status = ContributionApprovalStatus(
                status="approved",
                decision="approved",
                admin_id=lookups.created_by,
                resubmission_count=0,
                created_at=contributed_at,
                updated_at=now,
            )
            rows.append(contribution)
            imported.append(
                ImportedContribution(
                    contribution_id=contribution.id,
                    donor_id=item.donor_id,
                    case_id=item.case_id,
                    amount=row.amount,
                    contributed_at=contributed_at,
                    case_title_en=english_case_title(aggregate.title_ar),
                    case_title_ar=aggregate.title_ar or None,
                )
            )

        self._session.add_all(rows)
        self._session.commit()
        return imported

    def _seed_case_amounts(
        self,
        new_totals: Mapping[uuid.UUID, Decimal],
        added_to_existing: Mapping[uuid.UUID, Decimal],
    ) -> bool:
        if not new_totals and not added_to_existing:
            return True
        try:
            for case_id, total in new_totals.items():
                self._session.execute(
                    update(Case).where(Case.id == case_id).values(current_amount=total, updated_at=self._clock())
                )
            for case_id, delta in added_to_existing.items():
                apply_case_amount_delta(self._session, case_id, delta)
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            logger.exception(
                "Failed to update funded amounts for %d imported cases",
                len(new_totals) + len(added_to_existing),
            )
            return False
        return True


__all__ = [
    "BatchFailure",
    "ContributionWriter",
    "ImportAbortedError",
    "ImportPlan",
    "ImportedContribution",
    "PlannedRow",
    "WriteLookups",
    "WriteResult",
]
