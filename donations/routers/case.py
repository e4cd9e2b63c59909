from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from donations.database import get_db
from donations.models import Case
from donations.schemas import CaseRead, ReconciliationReportRead
from donations.services.approval_reconciler import ReconciliationError, recompute_case_amounts

router = APIRouter(prefix="/cases", tags=["Cases"])


def _get_case_or_404(case_id: UUID, db: Session) -> Case:
    case = db.get(Case, case_id)
    if not case:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Case not found")
    return case


def _recompute(db: Session, case_ids: list[UUID] | None = None) -> ReconciliationReportRead:
    try:
        report = recompute_case_amounts(db, case_ids)
    except ReconciliationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ReconciliationReportRead.from_orm(report)


@router.post("/reconcile-amounts", response_model=ReconciliationReportRead)
def reconcile_case_amounts(db: Session = Depends(get_db)) -> ReconciliationReportRead:
    return _recompute(db)


@router.get("/{case_id}", response_model=CaseRead)
def get_case(case_id: UUID, db: Session = Depends(get_db)) -> CaseRead:
    return _get_case_or_404(case_id, db)


@router.post("/{case_id}/reconcile-amount", response_model=ReconciliationReportRead)
def reconcile_case_amount(case_id: UUID, db: Session = Depends(get_db)) -> ReconciliationReportRead:
    _get_case_or_404(case_id, db)
    return _recompute(db, [case_id])
