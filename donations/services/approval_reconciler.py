"""Apply admin decisions to contributions and keep case funded amounts consistent."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

import sqlalchemy as sa
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from donations.models import Case, Contribution, ContributionApprovalStatus
from donations.services.contribution_notifications import ContributionNotificationDispatcher

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_ACKNOWLEDGED = "acknowledged"
TARGET_STATUSES = (STATUS_APPROVED, STATUS_REJECTED, STATUS_ACKNOWLEDGED)
DECISION_STATUSES = (STATUS_APPROVED, STATUS_REJECTED)
DRIFT_TOLERANCE = Decimal("0.01")
_CENTS = Decimal("0.01")


class InvalidTransitionError(ValueError):
    """Raised when a contribution is asked to move into a state it cannot enter."""


class ContributionNotFoundError(LookupError):
    """Raised when the contribution being decided does not exist."""


class ReconciliationError(RuntimeError):
    """Raised when a case amount could not be brought in line with its contributions."""


@dataclass(frozen=True)
class ApprovalTransition:
    status: str
    rejection_reason: Optional[str] = None
    admin_comment: Optional[str] = None
    donor_reply: Optional[str] = None
    payment_proof_url: Optional[str] = None


@dataclass(frozen=True)
class ApprovalOutcome:
    contribution: Contribution
    approval_status: ContributionApprovalStatus
    amount_delta: Decimal
    amount_synced: bool


@dataclass(frozen=True)
class CaseAmountCorrection:
    case_id: uuid.UUID
    previous_amount: Decimal
    corrected_amount: Decimal
    approved_contributions: int


@dataclass
class ReconciliationReport:
    cases_checked: int = 0
    total_drift: Decimal = Decimal("0")
    corrections: list[CaseAmountCorrection] = field(default_factory=list)

    @property
    def cases_corrected(self) -> int:
        return len(self.corrections)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_decimal(value: object) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value)).quantize(_CENTS)


def amount_delta(previously_funded: bool, new_status: str, amount: Decimal) -> Decimal:
    """Change to a case's funded amount caused by one decision.

    Entering ``approved`` from an unfunded state adds the amount, entering
    ``rejected`` from a funded state removes it, everything else is neutral.
    """

    if new_status == STATUS_APPROVED and not previously_funded:
        return Decimal(amount)
    if new_status == STATUS_REJECTED and previously_funded:
        return -Decimal(amount)
    return Decimal("0")


def last_decision(contribution: Contribution, approval: ContributionApprovalStatus | None) -> str | None:
    if approval is not None:
        if approval.decision:
            return approval.decision
        return approval.status if approval.status in DECISION_STATUSES else None
    return contribution.status if contribution.status in DECISION_STATUSES else None


def is_funded(contribution: Contribution, approval: ContributionApprovalStatus | None) -> bool:
    return last_decision(contribution, approval) == STATUS_APPROVED


def funded_condition():
    """SQL counterpart of :func:`is_funded` for a contributions/approval outer join."""

    return sa.or_(
        sa.and_(ContributionApprovalStatus.id.is_(None), Contribution.status == STATUS_APPROVED),
        ContributionApprovalStatus.decision == STATUS_APPROVED,
        sa.and_(
            ContributionApprovalStatus.decision.is_(None),
            ContributionApprovalStatus.status == STATUS_APPROVED,
        ),
    )


def apply_case_amount_delta(session: Session, case_id: uuid.UUID, delta: Decimal) -> None:
    """Shift ``current_amount`` by ``delta`` in one statement, floored at zero."""

    shifted = Case.current_amount + delta
    session.execute(
        update(Case)
        .where(Case.id == case_id)
        .values(
            current_amount=sa.case((shifted < 0, 0), else_=shifted),
            updated_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


def _record_decision(
    contribution: Contribution,
    approval: ContributionApprovalStatus | None,
    transition: ApprovalTransition,
    admin_id: uuid.UUID | None,
    previous_decision: str | None,
) -> ContributionApprovalStatus:
    status = transition.status
    now = _utcnow()
    decision = status if status in DECISION_STATUSES else previous_decision

    if approval is None:
        decided = status in DECISION_STATUSES
        approval = ContributionApprovalStatus(
            contribution_id=contribution.id,
            status=status,
            decision=decision,
            admin_id=admin_id if decided else None,
            rejection_reason=transition.rejection_reason if status == STATUS_REJECTED else None,
            admin_comment=transition.admin_comment if decided else None,
            donor_reply=transition.donor_reply,
            donor_reply_date=now if transition.donor_reply else None,
            payment_proof_url=transition.payment_proof_url,
            resubmission_count=0,
        )
        contribution.approval_status = approval
        return approval

    approval.status = status
    approval.decision = decision
    approval.updated_at = now
    if status == STATUS_REJECTED:
        approval.admin_id = admin_id
        approval.rejection_reason = transition.rejection_reason
        approval.admin_comment = transition.admin_comment
        approval.resubmission_count = (approval.resubmission_count or 0) + 1
    elif status == STATUS_APPROVED:
        approval.admin_id = admin_id
        approval.admin_comment = transition.admin_comment
    elif status == STATUS_ACKNOWLEDGED:
        approval.donor_reply_date = now

    if transition.donor_reply:
        approval.donor_reply = transition.donor_reply
        approval.donor_reply_date = now
    if transition.payment_proof_url:
        approval.payment_proof_url = transition.payment_proof_url
    return approval


def apply_approval_transition(
    session: Session,
    contribution_id: uuid.UUID,
    transition: ApprovalTransition,
    *,
    admin_id: uuid.UUID | None = None,
    notifier: ContributionNotificationDispatcher | None = None,
) -> ApprovalOutcome:
    """Record an admin decision, then sync the case amount and notify.

    The status write is committed first and always stands. The amount sync
    that follows may fail on its own; the outcome then reports
    ``amount_synced=False`` and the periodic recompute repairs the case.
    """

    if transition.status not in TARGET_STATUSES:
        raise InvalidTransitionError(
            f"Contributions cannot move to '{transition.status}'; expected one of {', '.join(TARGET_STATUSES)}"
        )

    contribution = session.get(Contribution, contribution_id)
    if contribution is None:
        raise ContributionNotFoundError(f"Contribution {contribution_id} not found")

    previous_decision = last_decision(contribution, contribution.approval_status)
    if transition.status == STATUS_ACKNOWLEDGED and previous_decision is None:
        raise InvalidTransitionError(
            f"Contribution {contribution_id} has no approve/reject decision to acknowledge yet"
        )
    delta = amount_delta(previous_decision == STATUS_APPROVED, transition.status, contribution.amount)

    approval = _record_decision(contribution, contribution.approval_status, transition, admin_id, previous_decision)
    contribution.status = transition.status
    session.add(contribution)
    session.commit()
    logger.info(
        "Contribution %s moved to %s (previous decision: %s)",
        contribution_id,
        transition.status,
        previous_decision or "none",
    )

    amount_synced = True
    if delta and contribution.case_id is not None:
        case_id = contribution.case_id
        try:
            apply_case_amount_delta(session, case_id, delta)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            error = ReconciliationError(f"Case {case_id} amount not adjusted by {delta}: {exc}")
            logger.error("%s", error, exc_info=True)
            amount_synced = False

    if transition.status in DECISION_STATUSES:
        dispatcher = notifier or ContributionNotificationDispatcher(session)
        dispatcher.notify_decision(
            contribution,
            transition.status,
            rejection_reason=transition.rejection_reason,
        )

    session.refresh(contribution)
    return ApprovalOutcome(
        contribution=contribution,
        approval_status=contribution.approval_status or approval,
        amount_delta=delta,
        amount_synced=amount_synced,
    )


def funded_totals(session: Session, case_ids: Iterable[uuid.UUID] | None = None) -> dict[uuid.UUID, tuple[Decimal, int]]:
    stmt = (
        select(Contribution.case_id, func.sum(Contribution.amount), func.count(Contribution.id))
        .outerjoin(ContributionApprovalStatus, ContributionApprovalStatus.contribution_id == Contribution.id)
        .where(Contribution.case_id.is_not(None), funded_condition())
        .group_by(Contribution.case_id)
    )
    if case_ids is not None:
        stmt = stmt.where(Contribution.case_id.in_(list(case_ids)))
    return {case_id: (_to_decimal(total), count) for case_id, total, count in session.execute(stmt)}


def recompute_case_amounts(
    session: Session,
    case_ids: Iterable[uuid.UUID] | None = None,
    *,
    tolerance: Decimal = DRIFT_TOLERANCE,
) -> ReconciliationReport:
    """Recompute funded amounts from contributions and correct cases that drifted."""

    ids = list(case_ids) if case_ids is not None else None
    stmt = select(Case).order_by(Case.created_at, Case.id)
    if ids is not None:
        stmt = stmt.where(Case.id.in_(ids))

    report = ReconciliationReport()
    try:
        cases = session.scalars(stmt).all()
        totals = funded_totals(session, ids)
        for case in cases:
            report.cases_checked += 1
            expected, count = totals.get(case.id, (Decimal("0"), 0))
            current = _to_decimal(case.current_amount)
            drift = abs(expected - current)
            if drift <= tolerance:
                continue
            case.current_amount = expected
            case.updated_at = _utcnow()
            report.total_drift += drift
            report.corrections.append(
                CaseAmountCorrection(
                    case_id=case.id,
                    previous_amount=current,
                    corrected_amount=expected,
                    approved_contributions=count,
                )
            )
            logger.info("Case %s funded amount corrected from %s to %s", case.id, current, expected)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise ReconciliationError(f"Case amount recompute failed: {exc}") from exc

    logger.info(
        "Checked %d cases, corrected %d (total drift %s)",
        report.cases_checked,
        report.cases_corrected,
        report.total_drift,
    )
    return report


__all__ = [
    "ApprovalOutcome",
    "ApprovalTransition",
    "CaseAmountCorrection",
    "ContributionNotFoundError",
    "InvalidTransitionError",
    "ReconciliationError",
    "ReconciliationReport",
    "amount_delta",
    "apply_approval_transition",
    "apply_case_amount_delta",
    "funded_totals",
    "is_funded",
    "last_decision",
    "recompute_case_amounts",
]
