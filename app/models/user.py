"""Local user and per-server credential models"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from app.models.base import Base


class User(Base):
    """Local user"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    email = Column(String, unique=True, nullable=True, index=True)
    # Users created from remote identities get a random placeholder; they never log in.
    password = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    credentials = relationship("Credential", back_populates="user")

    def credential_for(self, server_id: int):
        """Return this user's credential on a server, if any."""
        for credential in self.credentials:
            if credential.server_id == server_id:
                return credential
        return None

    def __repr__(self):
        return f"<User(name='{self.name}')>"


class Credential(Base):
    """Identity of a local user on a remote tracker server"""

    __tablename__ = "credentials"
    __table_args__ = (
        # One local identity per remote account.
        UniqueConstraint("server_id", "ext_id", name="uq_credentials_server_ext_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    server_id = Column(Integer, ForeignKey("servers.id"), nullable=False)
    ext_id = Column(Integer, nullable=False)
    username = Column(String, nullable=True)
    # Null for credentials discovered while pulling; the engine then acts as the mirror owner.
    api_key = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="credentials")
    server = relationship("Server")

    def __repr__(self):
        return f"<Credential(server_id={self.server_id}, ext_id={self.ext_id})>"
