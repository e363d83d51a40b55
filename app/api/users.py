"""Local user and credential management endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime

from app.models.base import get_db
from app.models import Credential, Server, User
from app.services.identity import unusable_password

router = APIRouter(prefix="/api/users", tags=["users"])


class UserCreate(BaseModel):
    name: str
    email: Optional[str] = None


class CredentialCreate(BaseModel):
    server_id: int
    ext_id: int
    username: Optional[str] = None
    api_key: Optional[str] = None


class CredentialResponse(BaseModel):
    id: int
    server_id: int
    ext_id: int
    username: Optional[str] = None
    has_api_key: bool

    class Config:
        from_attributes = True


class UserResponse(BaseModel):
    id: int
    name: str
    email: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    credentials: List[CredentialResponse] = []

    class Config:
        from_attributes = True


def _credential_response(credential: Credential) -> CredentialResponse:
    # API keys are write-only.
    return CredentialResponse(
        id=credential.id,
        server_id=credential.server_id,
        ext_id=credential.ext_id,
        username=credential.username,
        has_api_key=bool(credential.api_key),
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        created_at=user.created_at,
        updated_at=user.updated_at,
        credentials=[_credential_response(c) for c in user.credentials],
    )


def _get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/", response_model=List[UserResponse])
def list_users(db: Session = Depends(get_db)):
    """List local users with their credentials"""
    return [_user_response(u) for u in db.query(User).order_by(User.name).all()]


@router.post("/", response_model=UserResponse)
def create_user(user: UserCreate, db: Session = Depends(get_db)):
    """Create a local user"""
    if user.email and db.query(User).filter(User.email == user.email).first():
        raise HTTPException(status_code=400, detail="User email already exists")

    db_user = User(name=user.name, email=user.email, password=unusable_password())
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return _user_response(db_user)


@router.get("/{user_id}", response_model=UserResponse)
def get_user(user_id: int, db: Session = Depends(get_db)):
    """Get a specific user"""
    return _user_response(_get_user(db, user_id))


@router.post("/{user_id}/credentials", response_model=CredentialResponse)
def set_credential(user_id: int, credential: CredentialCreate, db: Session = Depends(get_db)):
    """Create or update the user's credential on a server"""
    user = _get_user(db, user_id)
    if not db.query(Server).filter(Server.id == credential.server_id).first():
        raise HTTPException(status_code=404, detail="Server not found")

    taken = (
        db.query(Credential)
        .filter(
            Credential.server_id == credential.server_id,
            Credential.ext_id == credential.ext_id,
            Credential.user_id != user.id,
        )
        .first()
    )
    if taken:
        raise HTTPException(status_code=400, detail="Remote account is linked to another user")

    db_credential = user.credential_for(credential.server_id)
    if db_credential is None:
        db_credential = Credential(user=user, server_id=credential.server_id)
        db.add(db_credential)
    db_credential.ext_id = credential.ext_id
    db_credential.username = credential.username
    if credential.api_key is not None:
        db_credential.api_key = credential.api_key or None

    db.commit()
    db.refresh(db_credential)
    return _credential_response(db_credential)


@router.delete("/{user_id}/credentials/{credential_id}")
def delete_credential(user_id: int, credential_id: int, db: Session = Depends(get_db)):
    """Delete one of the user's credentials"""
    credential = (
        db.query(Credential)
        .filter(Credential.id == credential_id, Credential.user_id == user_id)
        .first()
    )
    if not credential:
        raise HTTPException(status_code=404, detail="Credential not found")

    db.delete(credential)
    db.commit()
    return {"message": "Credential deleted successfully"}
