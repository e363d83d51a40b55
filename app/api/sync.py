"""Sync management endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime

from app.models.base import get_db
from app.models import SyncedIssue, SyncLog
from app.models.sync_log import SyncStatus, SyncType
from app.services.sync_service import SyncService

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncLogErrorResponse(BaseModel):
    id: int
    message: str
    created_at: datetime

    class Config:
        from_attributes = True


class SyncLogResponse(BaseModel):
    id: int
    mirror_id: int
    project_id: Optional[int] = None
    type: SyncType
    status: SyncStatus
    created_at: datetime
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncLogDetailResponse(SyncLogResponse):
    errors: List[SyncLogErrorResponse] = []


class SyncedIssueResponse(BaseModel):
    id: int
    issue_id: int
    project_id: int
    ext_id: int
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.post("/{mirror_id}/trigger")
def trigger_sync(mirror_id: int, db: Session = Depends(get_db)):
    """Manually run reconciliation for a mirror"""
    sync_service = SyncService(db)
    try:
        return sync_service.sync_mirror(mirror_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/logs", response_model=List[SyncLogResponse])
def list_sync_logs(
    limit: int = 100,
    mirror_id: int = None,
    db: Session = Depends(get_db)
):
    """List sync logs, newest first"""
    query = db.query(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
    if mirror_id:
        query = query.filter(SyncLog.mirror_id == mirror_id)
    return query.limit(limit).all()


@router.get("/logs/{log_id}", response_model=SyncLogDetailResponse)
def get_sync_log(log_id: int, db: Session = Depends(get_db)):
    """Get a sync log with its errors"""
    log = db.query(SyncLog).filter(SyncLog.id == log_id).first()
    if not log:
        raise HTTPException(status_code=404, detail="Sync log not found")
    return log


@router.get("/synced-issues", response_model=List[SyncedIssueResponse])
def list_synced_issues(
    project_id: int = None,
    db: Session = Depends(get_db)
):
    """List issue watermarks"""
    query = db.query(SyncedIssue).order_by(SyncedIssue.id)
    if project_id:
        query = query.filter(SyncedIssue.project_id == project_id)
    return query.all()
