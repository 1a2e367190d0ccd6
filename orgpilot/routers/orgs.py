"""Org disconnect, refused while the org still has work in flight."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Path
from fastapi import status
from sqlalchemy.orm import Session

from orgpilot.crud import crud
from orgpilot.database import get_db
from orgpilot.dependencies.auth import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/orgs",
    tags=["orgs"],
    dependencies=[Depends(get_current_user)],
)


@router.delete("/{org_id}", status_code=status.HTTP_204_NO_CONTENT)
def disconnect_org(
    *,
    org_id: int = Path(..., gt=0),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    org = crud.get_org(db, org_id)
    if org is None or org.account_id != current_user.account_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Org not found")

    try:
        crud.disconnect_org(db, org_id)
    except crud.OrgBusyError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot disconnect org while {exc.active_jobs} job(s) are queued or running",
        )

    logger.info(f"User {current_user.id} disconnected org {org_id}")
    return None
