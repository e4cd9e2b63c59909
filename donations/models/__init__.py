from donations.models.entities import (
    CONTRIBUTION_STATUSES,
    AdminRole,
    AdminUserRole,
    Case,
    CaseCategory,
    Contribution,
    ContributionApprovalStatus,
    Notification,
    PaymentMethod,
    TimestampMixin,
    User,
)

__all__ = [
    "CONTRIBUTION_STATUSES",
    "AdminRole",
    "AdminUserRole",
    "Case",
    "CaseCategory",
    "Contribution",
    "ContributionApprovalStatus",
    "Notification",
    "PaymentMethod",
    "TimestampMixin",
    "User",
]
