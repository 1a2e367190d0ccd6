"""Job control actions: respond to a waiting job and retry a failed one."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Path
from fastapi import Request
from fastapi import status
from sqlalchemy.orm import Session

from orgpilot.crud import crud
from orgpilot.database import get_db
from orgpilot.dependencies.auth import get_current_user
from orgpilot.schemas.schemas import JobOut
from orgpilot.schemas.schemas import JobRespondRequest

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/jobs",
    tags=["jobs"],
    dependencies=[Depends(get_current_user)],
)


@router.get("/{job_id}", response_model=JobOut)
def read_job(
    *,
    job_id: int = Path(..., gt=0),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    try:
        return crud.get_job_for_account(db, job_id, current_user.account_id)
    except crud.JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")


@router.post("/{job_id}/respond", response_model=JobOut)
def respond_to_job(
    *,
    job_id: int = Path(..., gt=0),
    body: JobRespondRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """Answer a paused / waiting job and continue it."""

    try:
        job = crud.respond_to_job(db, job_id, body.response, account_id=current_user.account_id)
    except crud.JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except crud.InvalidStateTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    request.app.state.runtime.queue.enqueue(job.id, {"response": body.response})
    logger.info(f"User {current_user.id} responded to job {job.id}")
    return job


@router.post("/{job_id}/retry", response_model=JobOut)
def retry_job(
    *,
    job_id: int = Path(..., gt=0),
    request: Request,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """Move a failed job back to ``queued`` and enqueue it."""

    try:
        job = crud.retry_job(db, job_id, account_id=current_user.account_id)
    except crud.JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except crud.InvalidStateTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    request.app.state.runtime.queue.enqueue(job.id, {})
    logger.info(f"User {current_user.id} retried job {job.id}")
    return job
