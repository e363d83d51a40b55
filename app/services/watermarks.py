"""Watermark store: per (entity, project) record of what has been synchronized"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from app.models import (
    Issue,
    IssueComment,
    IssueFile,
    Project,
    SyncedComment,
    SyncedFile,
    SyncedIssue,
)

logger = logging.getLogger(__name__)


def _later(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    """Monotonic merge: a watermark never moves backwards."""
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)


class WatermarkStore:
    """Reads and writes SyncedIssue/SyncedComment/SyncedFile rows.

    The store never commits; callers commit together with the mutation the
    watermark describes.
    """

    def __init__(self, db: Session):
        self.db = db

    # Issues

    def find_issue(self, ext_id: int, project: Project) -> Optional[Issue]:
        """Local issue whose counterpart on ``project`` has external id ``ext_id``."""
        issue = (
            self.db.query(Issue)
            .join(SyncedIssue, SyncedIssue.issue_id == Issue.id)
            .filter(SyncedIssue.project_id == project.id, SyncedIssue.ext_id == int(ext_id))
            .first()
        )
        if issue is not None:
            return issue
        return (
            self.db.query(Issue)
            .filter(Issue.project_id == project.id, Issue.ext_id == int(ext_id))
            .first()
        )

    def issue_watermark(self, issue: Issue, project: Project) -> Optional[SyncedIssue]:
        return (
            self.db.query(SyncedIssue)
            .filter(SyncedIssue.issue_id == issue.id, SyncedIssue.project_id == project.id)
            .first()
        )

    def record_issue(
        self, issue: Issue, project: Project, ext_id: int, updated_at: Optional[datetime]
    ) -> SyncedIssue:
        """Create the watermark for (issue, project) or move it forward."""
        row = self.issue_watermark(issue, project) if issue.id is not None else None
        if row is None:
            row = SyncedIssue(
                issue=issue,
                project_id=project.id,
                ext_id=int(ext_id),
                updated_at=updated_at,
            )
            self.db.add(row)
        else:
            row.ext_id = int(ext_id)
            row.updated_at = _later(row.updated_at, updated_at)
        return row

    def issues_to_push(self, project: Project, mirror_project: Project) -> List[Issue]:
        """Issues of either mirrored project whose state on ``mirror_project`` lags.

        Union of four disjoint cases, each measured against the watermark on
        ``mirror_project``:

        * home on ``project``, watermark older than the issue
        * home on ``mirror_project``, watermark older than the issue
          (changes that arrived through ``project`` and must go home)
        * home on ``project``, no watermark yet (never pushed)
        * home on ``mirror_project``, no watermark yet (created locally,
          never sent to its home server)
        """

        def stale(home: Project):
            return self.db.query(Issue).filter(
                Issue.project_id == home.id,
                Issue.synced_issues.any(
                    and_(
                        SyncedIssue.project_id == mirror_project.id,
                        SyncedIssue.updated_at < Issue.updated_at,
                    )
                ),
            )

        def never_pushed(home: Project):
            return self.db.query(Issue).filter(
                Issue.project_id == home.id,
                ~Issue.synced_issues.any(SyncedIssue.project_id == mirror_project.id),
            )

        union = stale(project).union_all(
            stale(mirror_project),
            never_pushed(project),
            never_pushed(mirror_project),
        )
        return union.order_by(Issue.id).all()

    # Comments

    def comment_by_ext_id(self, ext_id: int, project: Project) -> Optional[SyncedComment]:
        return (
            self.db.query(SyncedComment)
            .filter(SyncedComment.project_id == project.id, SyncedComment.ext_id == int(ext_id))
            .first()
        )

    def record_comment(
        self,
        comment: IssueComment,
        project: Project,
        ext_id: int,
        updated_at: Optional[datetime] = None,
    ) -> SyncedComment:
        row = SyncedComment(
            comment=comment, project_id=project.id, ext_id=int(ext_id), updated_at=updated_at
        )
        self.db.add(row)
        return row

    def comments_to_push(self, issue: Issue, project: Project) -> List[IssueComment]:
        return (
            self.db.query(IssueComment)
            .filter(
                IssueComment.issue_id == issue.id,
                ~IssueComment.synced_comments.any(SyncedComment.project_id == project.id),
            )
            .order_by(IssueComment.id)
            .all()
        )

    # Files

    def file_by_ext_id(self, ext_id: int, project: Project) -> Optional[SyncedFile]:
        return (
            self.db.query(SyncedFile)
            .filter(SyncedFile.project_id == project.id, SyncedFile.ext_id == int(ext_id))
            .first()
        )

    def record_file(
        self,
        file: IssueFile,
        project: Project,
        ext_id: int,
        updated_at: Optional[datetime] = None,
    ) -> SyncedFile:
        row = None
        if file.id is not None:
            row = (
                self.db.query(SyncedFile)
                .filter(SyncedFile.file_id == file.id, SyncedFile.project_id == project.id)
                .first()
            )
        if row is None:
            row = SyncedFile(file=file, project_id=project.id, ext_id=int(ext_id))
            self.db.add(row)
        else:
            row.ext_id = int(ext_id)
        row.updated_at = _later(row.updated_at, updated_at)
        return row

    def files_to_push(self, issue: Issue, project: Project) -> List[IssueFile]:
        return (
            self.db.query(IssueFile)
            .filter(
                IssueFile.issue_id == issue.id,
                ~IssueFile.synced_files.any(SyncedFile.project_id == project.id),
            )
            .order_by(IssueFile.id)
            .all()
        )
