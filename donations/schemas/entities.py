from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, validator


class TimestampSchema(BaseModel):
    created_at: datetime
    updated_at: datetime

    class Config:
        orm_mode = True


class ContributionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACKNOWLEDGED = "acknowledged"


class ApprovalStatusUpdate(BaseModel):
    status: ContributionStatus
    rejection_reason: Optional[str] = None
    admin_comment: Optional[str] = None
    donor_reply: Optional[str] = None
    payment_proof_url: Optional[str] = Field(None, max_length=2000)
    admin_id: Optional[UUID] = None

    @validator("status")
    def validate_target_status(cls, value: ContributionStatus) -> ContributionStatus:
        if value == ContributionStatus.PENDING:
            raise ValueError("Contributions cannot be moved back to pending")
        return value

    @validator("rejection_reason", "admin_comment", "donor_reply", "payment_proof_url")
    def strip_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class ApprovalStatusRead(TimestampSchema):
    id: UUID
    contribution_id: UUID
    status: ContributionStatus
    decision: Optional[str] = None
    admin_id: Optional[UUID] = None
    rejection_reason: Optional[str] = None
    admin_comment: Optional[str] = None
    donor_reply: Optional[str] = None
    donor_reply_date: Optional[datetime] = None
    payment_proof_url: Optional[str] = None
    resubmission_count: int = 0


class ContributionRead(TimestampSchema):
    id: UUID
    type: str
    amount: Decimal
    status: ContributionStatus
    anonymous: bool
    donor_id: UUID
    case_id: Optional[UUID] = None
    payment_method_id: Optional[UUID] = None
    notes: Optional[str] = None


class ContributionApprovalRead(BaseModel):
    contribution: ContributionRead
    approval_status: ApprovalStatusRead
    amount_delta: Decimal = Decimal("0")
    amount_synced: bool = True


class CaseRead(TimestampSchema):
    id: UUID
    external_id: Optional[str] = None
    title_en: str
    title_ar: Optional[str] = None
    description_en: Optional[str] = None
    description_ar: Optional[str] = None
    type: str
    priority: str
    status: str
    category_id: Optional[UUID] = None
    target_amount: Decimal
    current_amount: Decimal
    created_by: Optional[UUID] = None


class CaseAmountCorrectionRead(BaseModel):
    case_id: UUID
    previous_amount: Decimal
    corrected_amount: Decimal
    approved_contributions: int

    class Config:
        orm_mode = True


class ReconciliationReportRead(BaseModel):
    cases_checked: int
    cases_corrected: int
    total_drift: Decimal
    corrections: list[CaseAmountCorrectionRead] = Field(default_factory=list)

    class Config:
        orm_mode = True


class RowRejectionRead(BaseModel):
    line_number: int
    reason: str

    class Config:
        orm_mode = True


class ContributorFailureRead(BaseModel):
    contributor_id: int
    display_name: str
    reason: str

    class Config:
        orm_mode = True


class BatchFailureRead(BaseModel):
    batch_number: int
    size: int
    error: str

    class Config:
        orm_mode = True


class ImportSummaryRead(BaseModel):
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
    existing_case_ids: list[str] = Field(default_factory=list)
    contributions_inserted: int = 0
    contributions_existing: int = 0
    contributions_skipped: int = 0
    contributions_failed: int = 0
    notifications_created: int = 0
    earliest_contribution_date: Optional[date] = None
    rejected_rows: list[RowRejectionRead] = Field(default_factory=list)
    failed_contributors: list[ContributorFailureRead] = Field(default_factory=list)
    failed_batches: list[BatchFailureRead] = Field(default_factory=list)

    class Config:
        orm_mode = True
