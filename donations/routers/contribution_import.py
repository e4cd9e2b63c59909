from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from donations.database import get_db
from donations.schemas import ImportSummaryRead
from donations.services.contribution_csv import CsvFormatError
from donations.services.contribution_import import ContributionImportRunner
from donations.services.contribution_writer import ImportAbortedError
from donations.services.identity_provider import IdentityProviderClient
from donations.services.identity_provisioning import IdentityDirectory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contribution-imports", tags=["Contribution Imports"])

MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10 MB


def get_identity_provider() -> IdentityDirectory:
    try:
        return IdentityProviderClient()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


async def _read_upload_text(upload: UploadFile) -> str:
    data = await upload.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty.")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file exceeds the 10 MB size limit.",
        )
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Unable to decode file. Use UTF-8 encoding."
        ) from exc


@router.post("", response_model=ImportSummaryRead)
async def import_contributions(
    file: UploadFile = File(...),
    dry_run: bool = Form(False),
    notify_donors: bool = Form(False),
    db: Session = Depends(get_db),
    provider: IdentityDirectory = Depends(get_identity_provider),
) -> ImportSummaryRead:
    text = await _read_upload_text(file)
    await file.close()

    runner = ContributionImportRunner(db, provider)
    try:
        summary = await run_in_threadpool(runner.run, text, dry_run=dry_run, notify_donors=notify_donors)
    except CsvFormatError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ImportAbortedError as exc:
        logger.error("Contribution import aborted: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ImportSummaryRead.from_orm(summary)
