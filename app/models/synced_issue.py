"""Watermark models: what has been synchronized to which project"""
from sqlalchemy import Column, Integer, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncedIssue(Base):
    """Counterpart of a local issue on a project.

    ``updated_at`` is the remote ``updated_on`` last observed (or produced) on
    that project; an issue whose own ``updated_at`` is newer has unpushed changes.
    """

    __tablename__ = "synced_issues"
    __table_args__ = (
        UniqueConstraint("issue_id", "project_id", name="uq_synced_issues_issue_project"),
        UniqueConstraint("project_id", "ext_id", name="uq_synced_issues_project_ext_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    ext_id = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    issue = relationship("Issue", back_populates="synced_issues")
    project = relationship("Project")

    def __repr__(self):
        return f"<SyncedIssue(issue_id={self.issue_id}, project_id={self.project_id}, ext_id={self.ext_id})>"


class SyncedComment(Base):
    """Counterpart of a local comment (a journal entry) on a project"""

    __tablename__ = "synced_comments"
    __table_args__ = (
        UniqueConstraint("comment_id", "project_id", name="uq_synced_comments_comment_project"),
        UniqueConstraint("project_id", "ext_id", name="uq_synced_comments_project_ext_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    comment_id = Column(Integer, ForeignKey("issue_comments.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    ext_id = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    comment = relationship("IssueComment", back_populates="synced_comments")


class SyncedFile(Base):
    """Counterpart of a local file (an attachment) on a project"""

    __tablename__ = "synced_files"
    __table_args__ = (
        UniqueConstraint("file_id", "project_id", name="uq_synced_files_file_project"),
        UniqueConstraint("project_id", "ext_id", name="uq_synced_files_project_ext_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    file_id = Column(Integer, ForeignKey("issue_files.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    ext_id = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    file = relationship("IssueFile", back_populates="synced_files")
