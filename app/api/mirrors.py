"""Mirror management endpoints"""

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.config import settings
from app.models import Label, LabelType, Milestone, Mirror, Project, User
from app.models.base import get_db
from app.scheduler import scheduler

router = APIRouter(prefix="/api/mirrors", tags=["mirrors"])

LabelMap = Dict[str, Dict[str, int]]


class MirrorCreate(BaseModel):
    name: str
    owner_id: int
    left_project_id: int
    right_project_id: int
    left_milestone_id: Optional[int] = None
    right_milestone_id: Optional[int] = None
    # {"status": {"<left label id>": <right label id>}, ...}
    ltr_labels: LabelMap = {}
    rtl_labels: LabelMap = {}
    sync_enabled: bool = True
    sync_interval_minutes: int = settings.default_sync_interval_minutes


class MirrorResponse(BaseModel):
    id: int
    name: str
    owner_id: int
    left_project_id: int
    right_project_id: int
    left_milestone_id: Optional[int]
    right_milestone_id: Optional[int]
    ltr_labels: Optional[LabelMap]
    rtl_labels: Optional[LabelMap]
    sync_enabled: bool
    sync_interval_minutes: int
    created_at: datetime
    updated_at: datetime
    last_pull_at: Optional[datetime]

    class Config:
        from_attributes = True


def _validate_label_map(db: Session, labels: LabelMap, source: Project, target: Project):
    valid_types = {t.value for t in LabelType}
    for type_key, mapping in labels.items():
        if type_key not in valid_types:
            raise HTTPException(status_code=400, detail=f"Unknown label type: {type_key}")
        for source_id, target_id in mapping.items():
            for label_id, project in ((int(source_id), source), (int(target_id), target)):
                label = db.query(Label).filter(Label.id == label_id).first()
                if (
                    label is None
                    or label.type is None
                    or label.type.value != type_key
                    or label.server_id != project.server_id
                ):
                    raise HTTPException(
                        status_code=400,
                        detail=f"Label {label_id} is not a {type_key} of {project.name}'s server",
                    )


def _validate(db: Session, mirror: MirrorCreate):
    if mirror.left_project_id == mirror.right_project_id:
        raise HTTPException(status_code=400, detail="A mirror needs two different projects")
    if not db.query(User).filter(User.id == mirror.owner_id).first():
        raise HTTPException(status_code=404, detail="Owner not found")

    left = db.query(Project).filter(Project.id == mirror.left_project_id).first()
    right = db.query(Project).filter(Project.id == mirror.right_project_id).first()
    if not left or not right:
        raise HTTPException(status_code=404, detail="Project not found")

    for milestone_id, project in (
        (mirror.left_milestone_id, left),
        (mirror.right_milestone_id, right),
    ):
        if milestone_id is None:
            continue
        milestone = db.query(Milestone).filter(Milestone.id == milestone_id).first()
        if not milestone or milestone.project_id != project.id:
            raise HTTPException(
                status_code=400, detail=f"Milestone {milestone_id} does not belong to {project.name}"
            )

    _validate_label_map(db, mirror.ltr_labels, left, right)
    _validate_label_map(db, mirror.rtl_labels, right, left)


def _reschedule(mirror: Mirror):
    if mirror.sync_enabled:
        scheduler.schedule_mirror(mirror.id, mirror.sync_interval_minutes)
    else:
        scheduler.unschedule_mirror(mirror.id)


@router.get("/", response_model=List[MirrorResponse])
def list_mirrors(db: Session = Depends(get_db)):
    """List all mirrors"""
    return db.query(Mirror).all()


@router.post("/", response_model=MirrorResponse)
def create_mirror(mirror: MirrorCreate, db: Session = Depends(get_db)):
    """Create a new mirror"""
    if db.query(Mirror).filter(Mirror.name == mirror.name).first():
        raise HTTPException(status_code=400, detail="Mirror name already exists")
    _validate(db, mirror)

    db_mirror = Mirror(**mirror.dict())
    db.add(db_mirror)
    db.commit()
    db.refresh(db_mirror)

    _reschedule(db_mirror)
    return db_mirror


@router.get("/{mirror_id}", response_model=MirrorResponse)
def get_mirror(mirror_id: int, db: Session = Depends(get_db)):
    """Get a specific mirror"""
    mirror = db.query(Mirror).filter(Mirror.id == mirror_id).first()
    if not mirror:
        raise HTTPException(status_code=404, detail="Mirror not found")
    return mirror


@router.put("/{mirror_id}", response_model=MirrorResponse)
def update_mirror(mirror_id: int, mirror: MirrorCreate, db: Session = Depends(get_db)):
    """Update a mirror"""
    db_mirror = db.query(Mirror).filter(Mirror.id == mirror_id).first()
    if not db_mirror:
        raise HTTPException(status_code=404, detail="Mirror not found")
    existing = (
        db.query(Mirror).filter(Mirror.name == mirror.name, Mirror.id != mirror_id).first()
    )
    if existing:
        raise HTTPException(status_code=400, detail="Mirror name already exists")
    _validate(db, mirror)

    for key, value in mirror.dict().items():
        setattr(db_mirror, key, value)

    db.commit()
    db.refresh(db_mirror)

    _reschedule(db_mirror)
    return db_mirror


@router.delete("/{mirror_id}")
def delete_mirror(mirror_id: int, db: Session = Depends(get_db)):
    """Delete a mirror"""
    mirror = db.query(Mirror).filter(Mirror.id == mirror_id).first()
    if not mirror:
        raise HTTPException(status_code=404, detail="Mirror not found")

    scheduler.unschedule_mirror(mirror_id)
    db.delete(mirror)
    db.commit()
    return {"message": "Mirror deleted successfully"}


@router.post("/{mirror_id}/toggle", response_model=MirrorResponse)
def toggle_sync(mirror_id: int, db: Session = Depends(get_db)):
    """Toggle sync enabled/disabled for a mirror"""
    mirror = db.query(Mirror).filter(Mirror.id == mirror_id).first()
    if not mirror:
        raise HTTPException(status_code=404, detail="Mirror not found")

    mirror.sync_enabled = not mirror.sync_enabled
    db.commit()
    db.refresh(mirror)

    _reschedule(mirror)
    return mirror
