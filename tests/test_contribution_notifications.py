from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from donations.models import AdminRole, AdminUserRole, Case, Contribution, Notification, User
from donations.services.contribution_notifications import (
    ContributionNotificationDispatcher,
    format_amount,
    localized_case_title,
    render_notification,
    resolve_admin_recipients,
)
from donations.services.contribution_writer import ImportedContribution


@pytest.fixture()
def donor(db_session) -> User:
    user = User(email="donor@example.org", first_name="Mona", language="ar")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture()
def contribution(db_session, donor) -> Contribution:
    case = Case(title_en="School fees", title_ar="مصاريف مدرسه")
    db_session.add(case)
    db_session.flush()
    contribution = Contribution(amount=Decimal("1250.5"), status="approved", donor_id=donor.id, case_id=case.id)
    db_session.add(contribution)
    db_session.commit()
    return contribution


def test_format_amount_groups_thousands():
    assert format_amount(Decimal("1250.5")) == "1,250.50"
    assert format_amount(Decimal("300")) == "300"
    assert format_amount(Decimal("1000")) == "1,000"


def test_localized_case_title_falls_back_to_other_language():
    assert localized_case_title("School fees", "مصاريف مدرسه", "ar") == "مصاريف مدرسه"
    assert localized_case_title("School fees", None, "ar") == "School fees"
    assert localized_case_title(None, "مصاريف مدرسه", "en") == "مصاريف مدرسه"


def test_rejection_without_reason_uses_default_text():
    _, english = render_notification(
        "contribution_rejected", audience="donor", language="en", amount=Decimal("10"), case_title="X"
    )
    _, arabic = render_notification(
        "contribution_rejected", audience="donor", language="ar", amount=Decimal("10"), case_title="X"
    )

    assert "No reason provided" in english
    assert "لم يتم تحديد سبب" in arabic


def test_admin_recipients_include_role_members_and_legacy_admins(db_session, admin_user):
    legacy = User(email="legacy-admin@example.org", role="super_admin")
    member = User(email="member@example.org", role="donor")
    inactive = User(email="inactive@example.org", role="admin", is_active=False)
    db_session.add_all([legacy, member, inactive])
    db_session.flush()
    super_admin = db_session.scalars(select(AdminRole).where(AdminRole.name == "super_admin")).one()
    db_session.add(AdminUserRole(user_id=member.id, role_id=super_admin.id))
    db_session.commit()

    recipients = resolve_admin_recipients(db_session)

    assert set(recipients) == {admin_user.id, legacy.id, member.id}
    assert len(recipients) == len(set(recipients))


def test_decision_notifies_admins_and_donor_in_their_language(db_session, contribution, donor, admin_user):
    created = ContributionNotificationDispatcher(db_session).notify_decision(contribution, "approved")

    assert created == 2
    notifications = {n.recipient_id: n for n in db_session.scalars(select(Notification))}
    assert "مصاريف مدرسه" in notifications[donor.id].message
    assert "1,250.50" in notifications[donor.id].message
    assert "School fees" in notifications[admin_user.id].message
    assert notifications[admin_user.id].data["contribution_id"] == str(contribution.id)


def test_donor_who_is_admin_gets_one_notification(db_session, contribution, admin_user):
    contribution.donor_id = admin_user.id
    db_session.commit()

    created = ContributionNotificationDispatcher(db_session).notify_decision(contribution, "rejected")

    assert created == 1


def test_pending_and_acknowledged_are_not_notified(db_session, contribution):
    dispatcher = ContributionNotificationDispatcher(db_session)

    assert dispatcher.notify_decision(contribution, "pending") == 0
    assert dispatcher.notify_decision(contribution, "acknowledged") == 0
    assert db_session.scalars(select(Notification)).all() == []


def test_notification_failure_is_swallowed(db_session, contribution, monkeypatch, caplog):
    def _broken_commit():
        raise OperationalError("INSERT INTO notifications", {}, Exception("read-only database"))

    monkeypatch.setattr(db_session, "commit", _broken_commit)

    with caplog.at_level("WARNING"):
        created = ContributionNotificationDispatcher(db_session).notify_decision(contribution, "approved")

    assert created == 0
    assert "notification skipped" in caplog.text


def test_imported_notifications_are_batched(db_session, contribution, donor):
    contributed_at = datetime(2023, 3, 1, tzinfo=timezone.utc)
    items = [
        ImportedContribution(
            contribution_id=contribution.id,
            donor_id=donor.id,
            case_id=contribution.case_id,
            amount=Decimal(index + 1),
            contributed_at=contributed_at,
            case_title_en="School fees",
            case_title_ar="مصاريف مدرسه",
        )
        for index in range(5)
    ]

    created = ContributionNotificationDispatcher(db_session, batch_size=2).notify_imported(items)

    assert created == 5
    notifications = db_session.scalars(select(Notification)).all()
    assert all(n.recipient_id == donor.id for n in notifications)
    assert all(n.type == "contribution_approved" for n in notifications)
    assert all("جنيه" in n.message for n in notifications)
