from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from donations.database import get_db
from donations.models import Contribution, ContributionApprovalStatus
from donations.schemas import (
    ApprovalStatusRead,
    ApprovalStatusUpdate,
    ContributionApprovalRead,
    ContributionRead,
)
from donations.services.approval_reconciler import (
    ApprovalTransition,
    ContributionNotFoundError,
    InvalidTransitionError,
    apply_approval_transition,
)

router = APIRouter(prefix="/contributions", tags=["Contribution Approvals"])


@router.get("/{contribution_id}/approval-status", response_model=ApprovalStatusRead)
def get_contribution_approval_status(
    contribution_id: UUID, db: Session = Depends(get_db)
) -> ApprovalStatusRead:
    if not db.get(Contribution, contribution_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contribution not found")
    approval = db.scalars(
        select(ContributionApprovalStatus).where(ContributionApprovalStatus.contribution_id == contribution_id)
    ).first()
    if not approval:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approval status not found")
    return approval


@router.post("/{contribution_id}/approval-status", response_model=ContributionApprovalRead)
def update_contribution_approval_status(
    contribution_id: UUID,
    payload: ApprovalStatusUpdate,
    db: Session = Depends(get_db),
) -> ContributionApprovalRead:
    transition = ApprovalTransition(
        status=payload.status.value,
        rejection_reason=payload.rejection_reason,
        admin_comment=payload.admin_comment,
        donor_reply=payload.donor_reply,
        payment_proof_url=payload.payment_proof_url,
    )
    try:
        outcome = apply_approval_transition(db, contribution_id, transition, admin_id=payload.admin_id)
    except ContributionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contribution not found") from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return ContributionApprovalRead(
        contribution=ContributionRead.from_orm(outcome.contribution),
        approval_status=ApprovalStatusRead.from_orm(outcome.approval_status),
        amount_delta=outcome.amount_delta,
        amount_synced=outcome.amount_synced,
    )
