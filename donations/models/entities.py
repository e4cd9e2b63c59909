import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from donations.database import Base

CONTRIBUTION_STATUSES = ("pending", "approved", "rejected", "acknowledged")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class User(Base, TimestampMixin):
    """Profile row linked one-to-one with an identity provider account."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="donor")
    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    language: Mapped[str] = mapped_column(String(10), nullable=False, default="ar")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    legacy_contributor_id: Mapped[int | None] = mapped_column(Integer, nullable=True, unique=True)

    role_assignments: Mapped[list["AdminUserRole"]] = relationship(
        "AdminUserRole",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    contributions: Mapped[list["Contribution"]] = relationship(
        "Contribution",
        back_populates="donor",
        foreign_keys="[Contribution.donor_id]",
    )
    notifications: Mapped[list["Notification"]] = relationship(
        "Notification",
        back_populates="recipient",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class AdminRole(Base, TimestampMixin):
    __tablename__ = "admin_roles"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    assignments: Mapped[list["AdminUserRole"]] = relationship(
        "AdminUserRole",
        back_populates="role",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class AdminUserRole(Base, TimestampMixin):
    __tablename__ = "admin_user_roles"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "role_id", name="uq_admin_user_roles_user_role"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("admin_roles.id", ondelete="CASCADE"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    user: Mapped[User] = relationship("User", back_populates="role_assignments")
    role: Mapped[AdminRole] = relationship("AdminRole", back_populates="assignments")


class CaseCategory(Base, TimestampMixin):
    __tablename__ = "case_categories"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class PaymentMethod(Base, TimestampMixin):
    __tablename__ = "payment_methods"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Case(Base, TimestampMixin):
    __tablename__ = "cases"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    title_en: Mapped[str] = mapped_column(String(200), nullable=False)
    title_ar: Mapped[str | None] = mapped_column(Text, nullable=True)
    description_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    description_ar: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="one-time")
    priority: Mapped[str] = mapped_column(String(50), nullable=False, default="medium")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="draft")
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("case_categories.id", ondelete="SET NULL"), nullable=True
    )
    target_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    current_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    category: Mapped[CaseCategory | None] = relationship("CaseCategory")
    contributions: Mapped[list["Contribution"]] = relationship(
        "Contribution",
        back_populates="case",
        passive_deletes=True,
    )


class Contribution(Base, TimestampMixin):
    __tablename__ = "contributions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="donation")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.Enum(*CONTRIBUTION_STATUSES, name="contribution_status_enum"),
        nullable=False,
        default="pending",
    )
    anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_method_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payment_methods.id", ondelete="SET NULL"), nullable=True
    )
    donor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    case_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cases.id", ondelete="CASCADE"), nullable=True
    )
    # Set for rows written by the historical CSV import; identifies the source row across re-runs.
    import_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    donor: Mapped[User] = relationship("User", back_populates="contributions", foreign_keys=[donor_id])
    case: Mapped[Case | None] = relationship("Case", back_populates="contributions")
    payment_method: Mapped[PaymentMethod | None] = relationship("PaymentMethod")
    approval_status: Mapped[Optional["ContributionApprovalStatus"]] = relationship(
        "ContributionApprovalStatus",
        back_populates="contribution",
        uselist=False,
        passive_deletes=True,
    )


class ContributionApprovalStatus(Base, TimestampMixin):
    """Audit row tracking the latest admin decision on a contribution."""

    __tablename__ = "contribution_approval_status"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    contribution_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("contributions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status: Mapped[str] = mapped_column(
        sa.Enum(*CONTRIBUTION_STATUSES, name="contribution_approval_status_enum"),
        nullable=False,
        default="pending",
    )
    # Last admin decision; acknowledged rows keep the decision they acknowledge.
    decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    admin_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    donor_reply: Mapped[str | None] = mapped_column(Text, nullable=True)
    donor_reply_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_proof_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    resubmission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    contribution: Mapped[Contribution] = relationship("Contribution", back_populates="approval_status")
    admin: Mapped[User | None] = relationship("User", foreign_keys=[admin_id])


class Notification(Base, TimestampMixin):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    recipient: Mapped[User] = relationship("User", back_populates="notifications")
