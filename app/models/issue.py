"""Issue, comment and file models"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.models.base import Base
from app.models.label import LabelType

# Issue attribute holding each classification kind.
LABEL_ATTRIBUTES = {
    LabelType.TRACKER: "tracker",
    LabelType.STATUS: "status",
    LabelType.PRIORITY: "priority",
}


class Issue(Base):
    """Local copy of a tracker issue.

    ``project`` is the issue's home: the project (and server) where ``ext_id``
    is valid. Counterparts on other projects are tracked by ``synced_issues``.
    """

    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    ext_id = Column(Integer, nullable=True, index=True)

    subject = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    tracker_id = Column(Integer, ForeignKey("labels.id"), nullable=True)
    status_id = Column(Integer, ForeignKey("labels.id"), nullable=True)
    priority_id = Column(Integer, ForeignKey("labels.id"), nullable=True)
    open = Column(Boolean, default=True)

    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    estimated_hours = Column(Float, nullable=True)
    done_ratio = Column(Integer, nullable=True)
    start_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)

    # Set explicitly by the synchronizer (remote timestamps) or by local edits.
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    project = relationship("Project")
    milestone = relationship("Milestone")
    author = relationship("User", foreign_keys=[author_id])
    assignee = relationship("User", foreign_keys=[assignee_id])
    tracker = relationship("Label", foreign_keys=[tracker_id])
    status = relationship("Label", foreign_keys=[status_id])
    priority = relationship("Label", foreign_keys=[priority_id])

    comments = relationship("IssueComment", back_populates="issue", order_by="IssueComment.id")
    files = relationship("IssueFile", back_populates="issue", order_by="IssueFile.id")
    synced_issues = relationship("SyncedIssue", back_populates="issue")

    def label(self, label_type: LabelType):
        return getattr(self, LABEL_ATTRIBUTES[label_type])

    def set_label(self, label_type: LabelType, label) -> None:
        setattr(self, LABEL_ATTRIBUTES[label_type], label)

    def refresh_open(self) -> None:
        """Recompute the derived ``open`` flag from the status label."""
        self.open = not bool(self.status.is_closed) if self.status is not None else True

    def __repr__(self):
        return f"<Issue(ext_id={self.ext_id}, subject='{self.subject}')>"


class IssueComment(Base):
    """Comment (journal note) on an issue"""

    __tablename__ = "issue_comments"

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ext_id = Column(Integer, nullable=True)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    issue = relationship("Issue", back_populates="comments")
    author = relationship("User")
    synced_comments = relationship("SyncedComment", back_populates="comment")

    def __repr__(self):
        return f"<IssueComment(issue_id={self.issue_id}, ext_id={self.ext_id})>"


class IssueFile(Base):
    """Attachment of an issue; content lives in local file storage"""

    __tablename__ = "issue_files"

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ext_id = Column(Integer, nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    path = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    issue = relationship("Issue", back_populates="files")
    author = relationship("User")
    synced_files = relationship("SyncedFile", back_populates="file")

    def __repr__(self):
        return f"<IssueFile(name='{self.name}', ext_id={self.ext_id})>"
