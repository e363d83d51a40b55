"""Sync run log model"""
from sqlalchemy import Column, Integer, ForeignKey, DateTime, Text, Enum
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from app.models.base import Base


class SyncStatus(str, enum.Enum):
    """Sync run status enumeration"""
    IN_PROCESS = "In process"
    SUCCESS = "Success"
    FINISHED_WITH_ERRORS = "Finished with errors"


class SyncType(str, enum.Enum):
    """Sync run type enumeration"""
    PULL = "Pull issues"
    PUSH = "Push issues"


class SyncLog(Base):
    """Audit record of one pull or push run for a mirror"""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    mirror_id = Column(Integer, ForeignKey("mirrors.id"), nullable=False, index=True)
    # Project pulled from or pushed to.
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True)

    type = Column(Enum(SyncType), nullable=False)
    status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.IN_PROCESS)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    finished_at = Column(DateTime, nullable=True)

    # Relationships
    mirror = relationship("Mirror")
    errors = relationship("SyncLogError", back_populates="log", order_by="SyncLogError.id")

    def __repr__(self):
        return f"<SyncLog(type={self.type}, status={self.status})>"


class SyncLogError(Base):
    """Error recorded during a sync run"""

    __tablename__ = "sync_log_errors"

    id = Column(Integer, primary_key=True, index=True)
    sync_log_id = Column(Integer, ForeignKey("sync_logs.id"), nullable=False, index=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    log = relationship("SyncLog", back_populates="errors")
