"""Write in-app notifications for contribution decisions and historical imports."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from donations.models import AdminRole, AdminUserRole, Case, Contribution, Notification, User

if TYPE_CHECKING:
    from donations.services.contribution_writer import ImportedContribution

logger = logging.getLogger(__name__)

ADMIN_ROLE_NAMES = ("admin", "super_admin")
NOTIFICATION_APPROVED = "contribution_approved"
NOTIFICATION_REJECTED = "contribution_rejected"
NOTIFIED_STATUSES = {"approved": NOTIFICATION_APPROVED, "rejected": NOTIFICATION_REJECTED}


class NotificationError(RuntimeError):
    """Raised when notification rows could not be written."""


@dataclass(frozen=True)
class _Template:
    title: str
    message: str


# (notification type, audience, language) -> template
_TEMPLATES: dict[tuple[str, str, str], _Template] = {
    (NOTIFICATION_APPROVED, "donor", "en"): _Template(
        "Contribution Approved",
        'Your contribution of {amount} EGP for "{case_title}" has been approved. Thank you for your generosity!',
    ),
    (NOTIFICATION_APPROVED, "donor", "ar"): _Template(
        "تم قبول التبرع",
        'تم قبول تبرعك بمبلغ {amount} جنيه لحالة "{case_title}". شكراً لكرمك!',
    ),
    (NOTIFICATION_APPROVED, "admin", "en"): _Template(
        "Contribution Approved",
        'A contribution of {amount} EGP for "{case_title}" has been approved.',
    ),
    (NOTIFICATION_APPROVED, "admin", "ar"): _Template(
        "تم قبول تبرع",
        'تم قبول تبرع بمبلغ {amount} جنيه لحالة "{case_title}".',
    ),
    (NOTIFICATION_REJECTED, "donor", "en"): _Template(
        "Contribution Rejected",
        'Your contribution of {amount} EGP for "{case_title}" has been rejected. Reason: {reason}',
    ),
    (NOTIFICATION_REJECTED, "donor", "ar"): _Template(
        "تم رفض التبرع",
        'تم رفض تبرعك بمبلغ {amount} جنيه لحالة "{case_title}". السبب: {reason}',
    ),
    (NOTIFICATION_REJECTED, "admin", "en"): _Template(
        "Contribution Rejected",
        'A contribution of {amount} EGP for "{case_title}" has been rejected. Reason: {reason}',
    ),
    (NOTIFICATION_REJECTED, "admin", "ar"): _Template(
        "تم رفض تبرع",
        'تم رفض تبرع بمبلغ {amount} جنيه لحالة "{case_title}". السبب: {reason}',
    ),
}

_MISSING_REASON = {"en": "No reason provided", "ar": "لم يتم تحديد سبب"}
_UNKNOWN_CASE = {"en": "Unknown Case", "ar": "حالة غير معروفة"}


def format_amount(amount: Decimal) -> str:
    value = Decimal(amount)
    if value == value.to_integral_value():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def recipient_language(user: User | None) -> str:
    language = ((user.language if user else None) or "ar").lower()
    return "en" if language.startswith("en") else "ar"


def localized_case_title(title_en: str | None, title_ar: str | None, language: str) -> str:
    if language == "en":
        return title_en or title_ar or _UNKNOWN_CASE["en"]
    return title_ar or title_en or _UNKNOWN_CASE["ar"]


def render_notification(
    notification_type: str,
    *,
    audience: str,
    language: str,
    amount: Decimal,
    case_title: str,
    reason: str | None = None,
) -> tuple[str, str]:
    template = _TEMPLATES[(notification_type, audience, language)]
    message = template.message.format(
        amount=format_amount(amount),
        case_title=case_title,
        reason=reason or _MISSING_REASON[language],
    )
    return template.title, message


def resolve_admin_recipients(session: Session) -> list[uuid.UUID]:
    """Active members of the admin roles, oldest assignment first."""

    member_ids = session.scalars(
        select(AdminUserRole.user_id)
        .join(AdminRole, AdminRole.id == AdminUserRole.role_id)
        .join(User, User.id == AdminUserRole.user_id)
        .where(
            AdminRole.name.in_(ADMIN_ROLE_NAMES),
            AdminRole.is_active.is_(True),
            AdminUserRole.is_active.is_(True),
            User.is_active.is_(True),
        )
        .order_by(AdminUserRole.created_at, AdminUserRole.user_id)
    ).all()
    legacy_admin_ids = session.scalars(
        select(User.id)
        .where(User.role.in_(ADMIN_ROLE_NAMES), User.is_active.is_(True))
        .order_by(User.created_at, User.id)
    ).all()
    return list(dict.fromkeys([*member_ids, *legacy_admin_ids]))


class ContributionNotificationDispatcher:
    """Best-effort writer of contribution notifications.

    Failures never propagate: they are logged as :class:`NotificationError`
    and the caller's own work stands.
    """

    def __init__(self, session: Session, *, batch_size: int = 100) -> None:
        self._session = session
        self._batch_size = max(1, batch_size)

    def notify_decision(
        self,
        contribution: Contribution,
        status: str,
        *,
        rejection_reason: str | None = None,
    ) -> int:
        notification_type = NOTIFIED_STATUSES.get(status)
        if notification_type is None:
            return 0
        contribution_id = contribution.id
        try:
            return self._write_decision(contribution, notification_type, rejection_reason)
        except NotificationError as exc:
            logger.warning("Contribution %s notification skipped: %s", contribution_id, exc)
            return 0

    def notify_imported(self, contributions: Iterable["ImportedContribution"]) -> int:
        items = list(contributions)
        if not items:
            return 0

        donors = self._load_users({item.donor_id for item in items})
        created = 0
        for start in range(0, len(items), self._batch_size):
            batch = items[start : start + self._batch_size]
            try:
                created += self._write_imported_batch(batch, donors)
            except NotificationError as exc:
                logger.warning(
                    "Import notification batch %d skipped: %s",
                    start // self._batch_size + 1,
                    exc,
                )
        logger.info("Created %d import notifications", created)
        return created

    def _write_decision(self, contribution: Contribution, notification_type: str, reason: str | None) -> int:
        try:
            case = self._session.get(Case, contribution.case_id) if contribution.case_id else None
            admin_ids = resolve_admin_recipients(self._session)
            recipient_ids = list(dict.fromkeys([*admin_ids, contribution.donor_id]))
            users = self._load_users(recipient_ids)

            rows: list[Notification] = []
            for recipient_id in recipient_ids:
                language = recipient_language(users.get(recipient_id))
                audience = "donor" if recipient_id == contribution.donor_id else "admin"
                title, message = render_notification(
                    notification_type,
                    audience=audience,
                    language=language,
                    amount=contribution.amount,
                    case_title=localized_case_title(
                        case.title_en if case else None,
                        case.title_ar if case else None,
                        language,
                    ),
                    reason=reason,
                )
                rows.append(
                    Notification(
                        type=notification_type,
                        recipient_id=recipient_id,
                        title=title,
                        message=message,
                        data={
                            "contribution_id": str(contribution.id),
                            "case_id": str(contribution.case_id) if contribution.case_id else None,
                            "amount": float(contribution.amount),
                            "rejection_reason": reason,
                        },
                        read=False,
                    )
                )
            self._session.add_all(rows)
            self._session.commit()
        except Exception as exc:
            self._session.rollback()
            raise NotificationError(f"could not notify recipients of contribution {contribution.id}: {exc}") from exc
        return len(rows)

    def _write_imported_batch(self, batch: Sequence["ImportedContribution"], donors: dict[uuid.UUID, User]) -> int:
        try:
            rows: list[Notification] = []
            for item in batch:
                language = recipient_language(donors.get(item.donor_id))
                case_title = localized_case_title(item.case_title_en, item.case_title_ar, language)
                title, message = render_notification(
                    NOTIFICATION_APPROVED,
                    audience="donor",
                    language=language,
                    amount=item.amount,
                    case_title=case_title,
                )
                rows.append(
                    Notification(
                        type=NOTIFICATION_APPROVED,
                        recipient_id=item.donor_id,
                        title=title,
                        message=message,
                        data={
                            "contribution_id": str(item.contribution_id),
                            "case_id": str(item.case_id),
                            "amount": float(item.amount),
                            "case_title": case_title,
                        },
                        read=False,
                        created_at=item.contributed_at,
                        updated_at=item.contributed_at,
                    )
                )
            self._session.add_all(rows)
            self._session.commit()
        except Exception as exc:
            self._session.rollback()
            raise NotificationError(f"could not write {len(batch)} import notifications: {exc}") from exc
        return len(rows)

    def _load_users(self, user_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, User]:
        ids = list(user_ids)
        if not ids:
            return {}
        users = self._session.scalars(select(User).where(User.id.in_(ids))).all()
        return {user.id: user for user in users}


__all__ = [
    "ContributionNotificationDispatcher",
    "NotificationError",
    "format_amount",
    "localized_case_title",
    "render_notification",
    "resolve_admin_recipients",
]
