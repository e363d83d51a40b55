"""Database models"""

from app.models.base import Base
from app.models.issue import Issue, IssueComment, IssueFile
from app.models.label import Label, LabelType
from app.models.mirror import Mirror
from app.models.project import Milestone, Project
from app.models.server import Server
from app.models.sync_log import SyncLog, SyncLogError
from app.models.synced_issue import SyncedComment, SyncedFile, SyncedIssue
from app.models.user import Credential, User

__all__ = [
    "Base",
    "Server",
    "User",
    "Credential",
    "Project",
    "Milestone",
    "Label",
    "LabelType",
    "Issue",
    "IssueComment",
    "IssueFile",
    "SyncedIssue",
    "SyncedComment",
    "SyncedFile",
    "Mirror",
    "SyncLog",
    "SyncLogError",
]
