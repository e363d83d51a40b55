"""Tracker server management endpoints"""
from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime

from app.models.base import get_db
from app.models import Label, LabelType, Project, Server
from app.services.catalog import CatalogImporter
from app.services.redmine_client import RedmineError

router = APIRouter(prefix="/api/servers", tags=["servers"])


class ServerCreate(BaseModel):
    name: str
    base_uri: str
    description: Optional[str] = None
    backlink_field_id: Optional[int] = None


class ServerResponse(BaseModel):
    id: int
    name: str
    base_uri: str
    description: Optional[str] = None
    backlink_field_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ProjectResponse(BaseModel):
    id: int
    server_id: int
    ext_id: int
    parent_id: Optional[int] = None
    slug: Optional[str] = None
    name: str

    class Config:
        from_attributes = True


class LabelResponse(BaseModel):
    id: int
    type: Optional[LabelType] = None
    ext_id: int
    name: str
    is_closed: bool
    is_default: bool

    class Config:
        from_attributes = True


def _normalize_base_uri(base_uri: str) -> str:
    return base_uri.rstrip("/") + "/"


def _get_server(db: Session, server_id: int) -> Server:
    server = db.query(Server).filter(Server.id == server_id).first()
    if not server:
        raise HTTPException(status_code=404, detail="Server not found")
    return server


@router.get("/", response_model=List[ServerResponse])
def list_servers(db: Session = Depends(get_db)):
    """List all tracker servers"""
    return db.query(Server).all()


@router.post("/", response_model=ServerResponse)
def create_server(server: ServerCreate, db: Session = Depends(get_db)):
    """Register a tracker server"""
    existing = db.query(Server).filter(Server.name == server.name).first()
    if existing:
        raise HTTPException(status_code=400, detail="Server name already exists")

    payload = server.dict()
    payload["base_uri"] = _normalize_base_uri(server.base_uri)
    db_server = Server(**payload)
    db.add(db_server)
    db.commit()
    db.refresh(db_server)
    return db_server


@router.get("/{server_id}", response_model=ServerResponse)
def get_server(server_id: int, db: Session = Depends(get_db)):
    """Get a specific tracker server"""
    return _get_server(db, server_id)


@router.put("/{server_id}", response_model=ServerResponse)
def update_server(server_id: int, server: ServerCreate, db: Session = Depends(get_db)):
    """Update a tracker server"""
    db_server = _get_server(db, server_id)
    existing = (
        db.query(Server).filter(Server.name == server.name, Server.id != server_id).first()
    )
    if existing:
        raise HTTPException(status_code=400, detail="Server name already exists")

    for key, value in server.dict().items():
        setattr(db_server, key, value)
    db_server.base_uri = _normalize_base_uri(server.base_uri)

    db.commit()
    db.refresh(db_server)
    return db_server


@router.delete("/{server_id}")
def delete_server(server_id: int, db: Session = Depends(get_db)):
    """Delete a tracker server without projects"""
    server = _get_server(db, server_id)
    if db.query(Project).filter(Project.server_id == server_id).first():
        raise HTTPException(status_code=400, detail="Server still has imported projects")

    db.query(Label).filter(Label.server_id == server_id).delete()
    db.delete(server)
    db.commit()
    return {"message": "Server deleted successfully"}


@router.post("/{server_id}/import")
def import_catalog(
    server_id: int,
    api_key: str = Body(..., embed=True),
    db: Session = Depends(get_db),
):
    """Import projects, versions, trackers, statuses and priorities from the server"""
    server = _get_server(db, server_id)
    try:
        return CatalogImporter(db).import_server(server, api_key)
    except RedmineError as e:
        db.rollback()
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/{server_id}/projects", response_model=List[ProjectResponse])
def list_server_projects(server_id: int, db: Session = Depends(get_db)):
    """List imported projects of a server"""
    _get_server(db, server_id)
    return db.query(Project).filter(Project.server_id == server_id).order_by(Project.name).all()


@router.get("/{server_id}/labels", response_model=List[LabelResponse])
def list_server_labels(server_id: int, db: Session = Depends(get_db)):
    """List imported labels of a server"""
    _get_server(db, server_id)
    return (
        db.query(Label)
        .filter(Label.server_id == server_id)
        .order_by(Label.type, Label.ext_id)
        .all()
    )
