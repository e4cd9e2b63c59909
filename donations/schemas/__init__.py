from donations.schemas.entities import (
    ApprovalStatusRead,
    ApprovalStatusUpdate,
    BatchFailureRead,
    CaseAmountCorrectionRead,
    CaseRead,
    ContributionApprovalRead,
    ContributionRead,
    ContributionStatus,
    ContributorFailureRead,
    ImportSummaryRead,
    ReconciliationReportRead,
    RowRejectionRead,
)

__all__ = [
    "ApprovalStatusRead",
    "ApprovalStatusUpdate",
    "BatchFailureRead",
    "CaseAmountCorrectionRead",
    "CaseRead",
    "ContributionApprovalRead",
    "ContributionRead",
    "ContributionStatus",
    "ContributorFailureRead",
    "ImportSummaryRead",
    "ReconciliationReportRead",
    "RowRejectionRead",
]
