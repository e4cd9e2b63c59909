from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from donations.models import Case, Contribution, ContributionApprovalStatus, Notification, User
from donations.services import approval_reconciler
from donations.services.approval_reconciler import (
    ApprovalTransition,
    ContributionNotFoundError,
    InvalidTransitionError,
    ReconciliationError,
    amount_delta,
    apply_approval_transition,
    recompute_case_amounts,
)


@pytest.fixture()
def donor(db_session) -> User:
    user = User(email="donor@example.org", first_name="Mona", language="en")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture()
def case(db_session) -> Case:
    case = Case(title_en="Surgery for Ahmed", title_ar="عمليه لأحمد", current_amount=Decimal("0"))
    db_session.add(case)
    db_session.commit()
    return case


def _contribution(db_session, case: Case, donor: User, amount: str = "250", status: str = "pending") -> Contribution:
    contribution = Contribution(amount=Decimal(amount), status=status, donor_id=donor.id, case_id=case.id)
    db_session.add(contribution)
    db_session.commit()
    return contribution


def _current_amount(db_session, case: Case) -> Decimal:
    db_session.expire_all()
    return db_session.get(Case, case.id).current_amount


@pytest.mark.parametrize(
    ("previously_funded", "status", "expected"),
    [
        (False, "approved", Decimal("100")),
        (True, "approved", Decimal("0")),
        (True, "rejected", Decimal("-100")),
        (False, "rejected", Decimal("0")),
        (True, "acknowledged", Decimal("0")),
        (False, "acknowledged", Decimal("0")),
    ],
)
def test_amount_delta(previously_funded, status, expected):
    assert amount_delta(previously_funded, status, Decimal("100")) == expected


def test_oscillating_decisions_net_one_amount(db_session, case, donor):
    contribution = _contribution(db_session, case, donor)

    deltas = [
        apply_approval_transition(db_session, contribution.id, ApprovalTransition(status=status)).amount_delta
        for status in ("approved", "rejected", "approved")
    ]

    assert deltas == [Decimal("250"), Decimal("-250"), Decimal("250")]
    assert _current_amount(db_session, case) == Decimal("250")


def test_repeated_approval_does_not_double_count(db_session, case, donor):
    contribution = _contribution(db_session, case, donor)

    apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="approved"))
    outcome = apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="approved"))

    assert outcome.amount_delta == Decimal("0")
    assert _current_amount(db_session, case) == Decimal("250")


def test_first_rejection_leaves_amount_untouched(db_session, case, donor):
    contribution = _contribution(db_session, case, donor)

    outcome = apply_approval_transition(
        db_session, contribution.id, ApprovalTransition(status="rejected", rejection_reason="Unreadable receipt")
    )

    assert outcome.amount_delta == Decimal("0")
    assert outcome.approval_status.status == "rejected"
    assert outcome.approval_status.rejection_reason == "Unreadable receipt"
    assert outcome.approval_status.resubmission_count == 0
    assert outcome.contribution.status == "rejected"
    assert _current_amount(db_session, case) == Decimal("0")


def test_rejecting_existing_row_counts_resubmissions(db_session, case, donor, admin_user):
    contribution = _contribution(db_session, case, donor)

    apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="approved"), admin_id=admin_user.id)
    apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="rejected"), admin_id=admin_user.id)
    outcome = apply_approval_transition(
        db_session, contribution.id, ApprovalTransition(status="rejected", admin_comment="still wrong")
    )

    assert outcome.approval_status.resubmission_count == 2
    assert outcome.approval_status.admin_comment == "still wrong"
    rows = db_session.scalars(
        select(ContributionApprovalStatus).where(ContributionApprovalStatus.contribution_id == contribution.id)
    ).all()
    assert len(rows) == 1


def test_acknowledging_an_approval_keeps_it_funded(db_session, case, donor):
    contribution = _contribution(db_session, case, donor)
    apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="approved"))

    acknowledged = apply_approval_transition(
        db_session, contribution.id, ApprovalTransition(status="acknowledged", donor_reply="Thank you")
    )
    assert acknowledged.amount_delta == Decimal("0")
    assert acknowledged.approval_status.decision == "approved"
    assert _current_amount(db_session, case) == Decimal("250")

    rejected = apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="rejected"))

    assert rejected.amount_delta == Decimal("-250")
    assert _current_amount(db_session, case) == Decimal("0")


def test_acknowledged_records_donor_reply(db_session, case, donor):
    contribution = _contribution(db_session, case, donor)
    apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="rejected"))

    outcome = apply_approval_transition(
        db_session,
        contribution.id,
        ApprovalTransition(status="acknowledged", donor_reply="Receipt re-uploaded", payment_proof_url="https://x/y.png"),
    )

    assert outcome.approval_status.donor_reply == "Receipt re-uploaded"
    assert outcome.approval_status.donor_reply_date is not None
    assert outcome.approval_status.payment_proof_url == "https://x/y.png"
    assert outcome.approval_status.decision == "rejected"


def test_pending_is_never_a_target(db_session, case, donor):
    contribution = _contribution(db_session, case, donor)

    with pytest.raises(InvalidTransitionError):
        apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="pending"))


def test_acknowledging_an_undecided_contribution_is_refused(db_session, case, donor):
    contribution = _contribution(db_session, case, donor)

    with pytest.raises(InvalidTransitionError):
        apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="acknowledged"))

    db_session.expire_all()
    assert db_session.get(Contribution, contribution.id).status == "pending"
    assert db_session.get(Contribution, contribution.id).approval_status is None


def test_unknown_contribution(db_session):
    import uuid

    with pytest.raises(ContributionNotFoundError):
        apply_approval_transition(db_session, uuid.uuid4(), ApprovalTransition(status="approved"))


def test_rejection_floors_amount_at_zero(db_session, case, donor):
    contribution = _contribution(db_session, case, donor, status="approved")
    case.current_amount = Decimal("100")
    db_session.commit()

    apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="rejected"))

    assert _current_amount(db_session, case) == Decimal("0")


def test_amount_sync_failure_keeps_status_write(db_session, case, donor, monkeypatch):
    contribution = _contribution(db_session, case, donor)

    def _failing_delta(session, case_id, delta):
        raise OperationalError("UPDATE cases", {}, Exception("lock timeout"))

    monkeypatch.setattr(approval_reconciler, "apply_case_amount_delta", _failing_delta)

    outcome = apply_approval_transition(db_session, contribution.id, ApprovalTransition(status="approved"))

    assert outcome.amount_synced is False
    assert outcome.contribution.status == "approved"
    assert outcome.approval_status.status == "approved"
    assert _current_amount(db_session, case) == Decimal("0")

    report = recompute_case_amounts(db_session)
    assert report.cases_corrected == 1
    assert _current_amount(db_session, case) == Decimal("250")


def test_decisions_notify_admins_and_donor(db_session, case, donor, admin_user):
    contribution = _contribution(db_session, case, donor)

    apply_approval_transition(
        db_session, contribution.id, ApprovalTransition(status="rejected", rejection_reason="Duplicate transfer")
    )

    notifications = db_session.scalars(select(Notification)).all()
    assert {notification.recipient_id for notification in notifications} == {donor.id, admin_user.id}
    assert {notification.type for notification in notifications} == {"contribution_rejected"}
    donor_note = next(n for n in notifications if n.recipient_id == donor.id)
    assert "Duplicate transfer" in donor_note.message
    assert "Surgery for Ahmed" in donor_note.message


def test_recompute_uses_latest_decisions(db_session, case, donor):
    funded = _contribution(db_session, case, donor, amount="100")
    rejected = _contribution(db_session, case, donor, amount="40")
    _contribution(db_session, case, donor, amount="7", status="approved")
    apply_approval_transition(db_session, funded.id, ApprovalTransition(status="approved"))
    apply_approval_transition(db_session, funded.id, ApprovalTransition(status="acknowledged"))
    apply_approval_transition(db_session, rejected.id, ApprovalTransition(status="rejected"))

    case_row = db_session.get(Case, case.id)
    case_row.current_amount = Decimal("999")
    db_session.commit()

    report = recompute_case_amounts(db_session, [case.id])

    assert report.cases_checked == 1
    assert report.cases_corrected == 1
    correction = report.corrections[0]
    assert correction.previous_amount == Decimal("999.00")
    assert correction.corrected_amount == Decimal("107.00")
    assert correction.approved_contributions == 2
    assert report.total_drift == Decimal("892.00")
    assert _current_amount(db_session, case) == Decimal("107")


def test_recompute_ignores_drift_within_tolerance(db_session, case, donor):
    _contribution(db_session, case, donor, amount="10", status="approved")
    case_row = db_session.get(Case, case.id)
    case_row.current_amount = Decimal("10.01")
    db_session.commit()

    report = recompute_case_amounts(db_session)

    assert report.cases_corrected == 0


def test_recompute_failure_is_reported(db_session, monkeypatch):
    def _broken_commit():
        raise OperationalError("UPDATE cases", {}, Exception("gone"))

    monkeypatch.setattr(db_session, "commit", _broken_commit)

    with pytest.raises(ReconciliationError):
        recompute_case_amounts(db_session)
