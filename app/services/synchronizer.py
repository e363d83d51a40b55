"""Issue synchronization between the local database and a Redmine server"""

import logging
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from app.config import settings
from app.models import (
    Issue,
    IssueComment,
    IssueFile,
    Milestone,
    Mirror,
    Project,
    Server,
    SyncLog,
    SyncLogError,
    User,
)
from app.models.sync_log import SyncStatus, SyncType
from app.models.synced_issue import utcnow
from app.services.identity import IdentityResolver
from app.services.journal import JournalNarrator
from app.services.labels import REMOTE_LABEL_FIELDS, SYNCED_LABEL_TYPES, LabelTranslator
from app.services.redmine_client import AccessError, RedmineClient, RedmineError
from app.services.storage import LocalFileStorage
from app.services.watermarks import WatermarkStore

logger = logging.getLogger(__name__)


class RedmineSynchronizer:
    """Pulls remote changes into local issues and pushes local changes out.

    One instance talks to one server. ``pull`` and ``push`` each produce a
    ``SyncLog``; failures on a single issue, comment or file are recorded on
    that log and do not stop the run.
    """

    PAGE_SIZE = 100

    def __init__(
        self,
        db: Session,
        server: Server,
        *,
        target_timezone: Union[str, tzinfo, None] = None,
        storage: Optional[LocalFileStorage] = None,
        client_factory=RedmineClient,
    ):
        self.db = db
        self.server = server
        tz = target_timezone or settings.target_timezone
        self.target_timezone = ZoneInfo(tz) if isinstance(tz, str) else tz
        self.storage = storage or LocalFileStorage()
        self.client_factory = client_factory

        self.identities = IdentityResolver(db)
        self.labels = LabelTranslator(db)
        self.watermarks = WatermarkStore(db)
        self.narrator = JournalNarrator(db)

        self.client = None
        self.mirror: Optional[Mirror] = None
        self.log: Optional[SyncLog] = None
        self._error_count = 0
        self._pending_warnings: List[str] = []

    # Timestamps

    def now(self) -> datetime:
        """Current time as tz-naive datetime in the target timezone."""
        return datetime.now(self.target_timezone).replace(tzinfo=None)

    def _to_local(self, value: Optional[str]) -> Optional[datetime]:
        """Parse a remote ISO8601 timestamp into a tz-naive datetime in the target timezone."""
        if not value:
            return None
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(self.target_timezone).replace(tzinfo=None)

    def _to_zulu(self, value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.target_timezone)
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    @staticmethod
    def _to_date(value: Optional[str]) -> Optional[date]:
        return date.fromisoformat(str(value)[:10]) if value else None

    @staticmethod
    def _from_date(value: Optional[date]) -> Optional[str]:
        return value.isoformat() if value else None

    # Connection

    def _connect(self, api_key: Optional[str] = None) -> None:
        """Connect as ``api_key``, or as the mirror owner when no key is given."""
        if not api_key:
            credential = self.mirror.owner_credential(self.server.id)
            if credential is None or not credential.api_key:
                raise AccessError(f"Mirror owner has no api key for server {self.server.name}")
            api_key = credential.api_key
        self.client = self.client_factory(self.server.base_uri, api_key)

    def _api_key_for(self, user: Optional[User]) -> Optional[str]:
        credential = user.credential_for(self.server.id) if user is not None else None
        return credential.api_key if credential is not None and credential.api_key else None

    def _current_account(self) -> Dict[str, Any]:
        return self.client.get_current_user()

    # Run log

    def _begin(self, mirror: Mirror, project: Project, sync_type: SyncType) -> None:
        self.mirror = mirror
        self._error_count = 0
        self._pending_warnings = []
        self.log = SyncLog(
            mirror_id=mirror.id,
            project_id=project.id,
            type=sync_type,
            status=SyncStatus.IN_PROCESS,
        )
        self.db.add(self.log)
        self.db.commit()

    def _record_error(self, message: str) -> None:
        logger.error(message)
        self.db.add(SyncLogError(sync_log_id=self.log.id, message=message))
        self.db.commit()
        self._error_count += 1

    def _warn(self, message: str) -> None:
        """Queue a mapping gap; persisted once the current item is committed or rolled back."""
        logger.warning(message)
        self._pending_warnings.append(message)

    def _flush_warnings(self) -> None:
        pending, self._pending_warnings = self._pending_warnings, []
        for message in pending:
            self.db.add(SyncLogError(sync_log_id=self.log.id, message=message))
            self._error_count += 1
        if pending:
            self.db.commit()

    def _fail_item(self, message: str) -> None:
        # Keep one bad item from poisoning the session for the rest of the run.
        self.db.rollback()
        self._flush_warnings()
        self._record_error(message)

    def _finish(self) -> SyncLog:
        self.log.status = (
            SyncStatus.FINISHED_WITH_ERRORS if self._error_count else SyncStatus.SUCCESS
        )
        self.log.finished_at = utcnow()
        self.db.commit()
        logger.info(f"{self.log.type.value} for mirror {self.mirror.name}: {self.log.status.value}")
        return self.log

    # Pull

    def pull(
        self,
        project: Project,
        mirror: Mirror,
        updated_since: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
    ) -> SyncLog:
        """Save new remote issues and remote changes of ``project`` locally."""
        self._check_server(project)
        self._begin(mirror, project, SyncType.PULL)
        try:
            self._connect()
            remote_issues = self._get_issues(project, updated_since, created_since)
        except Exception as e:
            self._record_error(f"Error pulling issues of {project.name}: {e}")
            self._finish()
            raise

        for remote_issue in remote_issues:
            try:
                self._update_or_create_local_issue(remote_issue, project)
                self._flush_warnings()
            except Exception as e:
                self._fail_item(
                    f"Error pulling to {project.name} an issue \"{remote_issue.get('subject')}\": {e}"
                )
        return self._finish()

    def _get_issues(
        self,
        project: Project,
        updated_since: Optional[datetime],
        created_since: Optional[datetime],
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {
            "project_id": project.ext_id,
            # Include closed issues, exclude subprojects (they are separate local projects).
            "status_id": "*",
            "subproject_id": "!*",
            "limit": self.PAGE_SIZE,
        }
        if updated_since:
            filters["updated_on"] = f">={self._to_zulu(updated_since)}"
        if created_since:
            filters["created_on"] = f">={self._to_zulu(created_since)}"

        offset = 0
        total_count = 1
        issues: List[Dict[str, Any]] = []
        while total_count > len(issues):
            page = self.client.list_issues(filters, offset)
            if not page["issues"]:
                break
            offset += page["limit"] or len(page["issues"])
            total_count = page["total_count"]
            issues.extend(page["issues"])
        return issues

    def _update_or_create_local_issue(self, remote_issue: Dict[str, Any], project: Project) -> None:
        remote_updated = self._to_local(remote_issue["updated_on"])
        local_issue = self.watermarks.find_issue(remote_issue["id"], project)

        if local_issue is not None:
            if local_issue.updated_at is None or local_issue.updated_at < remote_updated:
                self._update_local_issue(remote_issue, local_issue, project)
                self.watermarks.record_issue(
                    local_issue, project, remote_issue["id"], local_issue.updated_at
                )
                self._attach_labels(local_issue, remote_issue, project)
                local_issue.refresh_open()
                self.db.commit()
        else:
            local_issue = self._create_local_issue(remote_issue, project)
            self.watermarks.record_issue(
                local_issue, project, remote_issue["id"], local_issue.updated_at
            )
            self._attach_labels(local_issue, remote_issue, project)
            local_issue.refresh_open()
            self.db.commit()
            logger.info(f"Pulled new issue #{remote_issue['id']} into {project.name}")

        # Comments and files can change without bumping the issue's updated_on.
        details = self.client.get_issue(remote_issue["id"], include="journals,attachments")
        self._add_comments(details, local_issue, project)
        self._add_files(details, local_issue, project)

    def _resolve_user(self, remote_user_id: Optional[int]) -> Optional[User]:
        if not remote_user_id:
            return None
        try:
            return self.identities.resolve_user(self.client, remote_user_id, self.server)
        except RedmineError as e:
            # Profiles of other users are often hidden from non-admin keys.
            logger.warning(f"Cannot load remote user {remote_user_id} from {self.server.name}: {e}")
            return None

    def _milestone(self, remote_issue: Dict[str, Any], project: Project) -> Optional[Milestone]:
        version = remote_issue.get("fixed_version")
        if not version:
            return None
        return (
            self.db.query(Milestone)
            .filter(Milestone.ext_id == int(version["id"]), Milestone.project_id == project.id)
            .first()
        )

    def _create_local_issue(self, remote_issue: Dict[str, Any], project: Project) -> Issue:
        author = self._resolve_user((remote_issue.get("author") or {}).get("id"))
        assignee = self._resolve_user((remote_issue.get("assigned_to") or {}).get("id"))
        updated_at = self._to_local(remote_issue["updated_on"])
        issue = Issue(
            project=project,
            ext_id=int(remote_issue["id"]),
            milestone=self._milestone(remote_issue, project),
            author=author or self.mirror.owner,
            assignee=assignee or self.mirror.owner,
            subject=remote_issue["subject"],
            description=remote_issue.get("description"),
            estimated_hours=remote_issue.get("estimated_hours"),
            done_ratio=remote_issue.get("done_ratio"),
            start_date=self._to_date(remote_issue.get("start_date")),
            due_date=self._to_date(remote_issue.get("due_date")),
            created_at=self._to_local(remote_issue.get("created_on")) or updated_at,
            updated_at=updated_at,
        )
        self.db.add(issue)
        return issue

    def _update_local_issue(
        self, remote_issue: Dict[str, Any], local_issue: Issue, project: Project
    ) -> Issue:
        assignee = self._resolve_user((remote_issue.get("assigned_to") or {}).get("id"))
        # Version ids are only meaningful on the issue's home project.
        if local_issue.project_id == project.id:
            local_issue.milestone = self._milestone(remote_issue, project)
        local_issue.subject = remote_issue["subject"]
        local_issue.start_date = self._to_date(remote_issue.get("start_date"))
        local_issue.due_date = self._to_date(remote_issue.get("due_date"))
        local_issue.assignee = assignee or self.mirror.owner
        local_issue.estimated_hours = remote_issue.get("estimated_hours")
        local_issue.done_ratio = remote_issue.get("done_ratio")
        local_issue.description = remote_issue.get("description")
        local_issue.updated_at = self._to_local(remote_issue["updated_on"])
        return local_issue

    def _attach_labels(self, local_issue: Issue, remote_issue: Dict[str, Any], project: Project) -> None:
        for label_type in SYNCED_LABEL_TYPES:
            remote_label = remote_issue.get(label_type.value) or {}
            if remote_label.get("id") is None:
                continue
            label = self.labels.local_label(
                local_issue, label_type, remote_label["id"], self.mirror, project
            )
            if label is None:
                self._warn(f"Cannot attach label. Not matched label: {remote_label.get('name')}")
                continue
            if local_issue.label(label_type) is not label:
                local_issue.set_label(label_type, label)

    def _add_comments(self, details: Dict[str, Any], local_issue: Issue, project: Project) -> None:
        entries = self.narrator.comments(details.get("journals") or [], self.server.id)
        for entry in entries:
            if self.watermarks.comment_by_ext_id(entry["id"], project) is not None:
                continue
            try:
                author = self._resolve_user(entry["user_id"])
                created_at = self._to_local(entry["created_on"])
                comment = IssueComment(
                    issue=local_issue,
                    author=author or self.mirror.owner,
                    body=entry["notes"],
                    ext_id=int(entry["id"]),
                    created_at=created_at,
                )
                self.db.add(comment)
                self.watermarks.record_comment(comment, project, entry["id"], created_at)
                self.db.commit()
            except Exception as e:
                self._fail_item(f"Error pulling to {project.name} a comment #{entry['id']}: {e}")

    def _add_files(self, details: Dict[str, Any], local_issue: Issue, project: Project) -> None:
        for attachment in details.get("attachments") or []:
            try:
                self._add_file(attachment, local_issue, project)
            except Exception as e:
                self._fail_item(
                    f"Error pulling to {project.name} a file \"{attachment.get('filename')}\": {e}"
                )

    def _add_file(self, attachment: Dict[str, Any], local_issue: Issue, project: Project) -> None:
        synced = self.watermarks.file_by_ext_id(attachment["id"], project)
        if synced is not None:
            # Content never changes once uploaded; only metadata is refreshed.
            synced.file.name = attachment.get("filename") or synced.file.name
            synced.file.description = attachment.get("description")
            self.db.commit()
            return

        content = self.client.download_attachment(attachment["id"])
        path = self.storage.generate_path(attachment.get("filename"))
        self.storage.put(path, content)
        author = self._resolve_user((attachment.get("author") or {}).get("id"))
        created_at = self._to_local(attachment.get("created_on"))
        local_file = IssueFile(
            issue=local_issue,
            author=author or self.mirror.owner,
            name=attachment.get("filename") or path.rsplit("/", 1)[-1],
            description=attachment.get("description"),
            path=path,
            ext_id=int(attachment["id"]),
            created_at=created_at,
        )
        self.db.add(local_file)
        self.watermarks.record_file(local_file, project, attachment["id"], created_at)
        self.db.commit()

    # Push

    def push(self, issues_to_push: Iterable[Issue], project: Project, mirror: Mirror) -> SyncLog:
        """Send new local issues and local changes to ``project``.

        Only a failure of the mirror owner's connection aborts the run; every
        other failure is recorded against the issue, comment or file.
        """
        self._check_server(project)
        self._begin(mirror, project, SyncType.PUSH)
        seen = set()
        for local_issue in issues_to_push:
            if local_issue.id in seen:
                continue
            seen.add(local_issue.id)
            subject = local_issue.subject
            try:
                remote_issue = self._as_author(
                    local_issue.author,
                    lambda as_owner: self._update_or_create_remote_issue(local_issue, project),
                )
                self._flush_warnings()
            except AccessError as e:
                self._fail_item(f"Error pushing to {project.name} an issue \"{subject}\": {e}")
                self._finish()
                raise
            except Exception as e:
                self._fail_item(f"Error pushing to {project.name} an issue \"{subject}\": {e}")
                continue

            try:
                for comment in self.watermarks.comments_to_push(local_issue, project):
                    self._push_comment(comment, project, remote_issue["id"])
                for local_file in self.watermarks.files_to_push(local_issue, project):
                    self._push_file(local_file, project, remote_issue["id"])
            except AccessError:
                self._finish()
                raise
        return self._finish()

    def _as_author(self, user: Optional[User], action):
        """Run ``action(as_owner)`` connected as ``user``, else as the mirror owner.

        The owner takes over when ``user`` has no key on this server or the
        server rejects it. An ``AccessError`` raised as the owner propagates.
        """
        api_key = self._api_key_for(user)
        if api_key:
            self._connect(api_key)
            try:
                return action(False)
            except AccessError as e:
                self.db.rollback()
                self._pending_warnings = []
                self._warn(
                    f"Api key of {user.name} was rejected by {self.server.name}, "
                    f"acting as mirror owner: {e}"
                )
        self._connect()
        return action(True)

    def _assignee_ext_id(self, local_issue: Issue, project: Project) -> Optional[int]:
        if local_issue.assignee is not None:
            credential = local_issue.assignee.credential_for(project.server_id)
            if credential is not None:
                return credential.ext_id
        owner_credential = self.mirror.owner_credential(project.server_id)
        return owner_credential.ext_id if owner_credential is not None else None

    def _milestone_ext_id(self, local_issue: Issue, project: Project) -> Optional[int]:
        if local_issue.project_id == project.id:
            return local_issue.milestone.ext_id if local_issue.milestone else None
        milestone = self.mirror.milestone_for(project)
        return milestone.ext_id if milestone else None

    def _remote_attributes(self, local_issue: Issue, project: Project, first_push: bool) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {
            "subject": local_issue.subject,
            "description": local_issue.description,
            "project_id": project.ext_id,
            "fixed_version_id": self._milestone_ext_id(local_issue, project),
            "assigned_to_id": self._assignee_ext_id(local_issue, project),
            "estimated_hours": local_issue.estimated_hours,
            "done_ratio": local_issue.done_ratio,
            "start_date": self._from_date(local_issue.start_date),
            "due_date": self._from_date(local_issue.due_date),
            "author_id": self._current_account()["id"],
        }

        home = local_issue.project
        if first_push and home.id != project.id and local_issue.ext_id is not None:
            if project.server.backlink_field_id:
                attributes["custom_fields"] = [
                    {
                        "id": project.server.backlink_field_id,
                        "value": home.server.issue_url(local_issue.ext_id),
                    }
                ]

        same_server = home.server_id == project.server_id
        for label_type in SYNCED_LABEL_TYPES:
            label = local_issue.label(label_type)
            if label is None:
                continue
            field = REMOTE_LABEL_FIELDS[label_type]
            if same_server:
                attributes[field] = label.ext_id
                continue
            ext_id = self.labels.remote_ext_id(local_issue, label_type, self.mirror, project)
            if ext_id is None:
                self._warn(f"Cannot update remote label. Not matched label: {label.name}")
            else:
                attributes[field] = ext_id
        return attributes

    def _update_or_create_remote_issue(self, local_issue: Issue, project: Project) -> Dict[str, Any]:
        synced = self.watermarks.issue_watermark(local_issue, project)
        attributes = self._remote_attributes(local_issue, project, first_push=synced is None)

        if synced is not None:
            response = self._update_remote_issue(synced.ext_id, attributes)
            self.watermarks.record_issue(
                local_issue, project, synced.ext_id, self._to_local(response["updated_on"])
            )
        else:
            response = self.client.create_issue(attributes)
            if local_issue.project_id == project.id and local_issue.ext_id is None:
                # Locally created issue reaching its home server for the first time.
                local_issue.ext_id = int(response["id"])
            self.watermarks.record_issue(
                local_issue, project, response["id"], self._to_local(response["updated_on"])
            )
        self.db.commit()
        return response

    def _update_remote_issue(self, ext_id: int, attributes: Dict[str, Any]) -> Dict[str, Any]:
        self.client.update_issue(ext_id, attributes)
        return self.client.get_issue(ext_id)

    @staticmethod
    def _newest_entry_id(entries: List[Dict[str, Any]], key: str, value: Optional[str]) -> int:
        """Id of the newest entry whose ``key`` equals ``value``, else of the newest entry.

        Creating notes and attachments returns no id, so it is recovered by
        re-reading the issue. A concurrent writer can still win the fallback.
        """
        if not entries:
            raise RedmineError(f"No {key} entries found after write")
        wanted = (value or "").strip()
        for entry in reversed(entries):
            if (entry.get(key) or "").strip() == wanted:
                return int(entry["id"])
        return int(entries[-1]["id"])

    def _push_comment(self, comment: IssueComment, project: Project, remote_issue_id: int) -> None:
        def write(as_owner: bool) -> int:
            body = comment.body
            if as_owner:
                body = f"{body}\nComment author: {comment.author.name}"
            self.client.update_issue(remote_issue_id, {"notes": body})
            journals = self.client.get_issue(remote_issue_id, include="journals").get("journals") or []
            return self._newest_entry_id(journals, "notes", body)

        message = f"Error pushing to {project.name} a comment #{comment.id}"
        try:
            ext_id = self._as_author(comment.author, write)
            self.watermarks.record_comment(comment, project, ext_id, self.now())
            self.db.commit()
            self._flush_warnings()
        except AccessError as e:
            self._fail_item(f"{message}: {e}")
            raise
        except Exception as e:
            self._fail_item(f"{message}: {e}")

    def _push_file(self, local_file: IssueFile, project: Project, remote_issue_id: int) -> None:
        def write(as_owner: bool) -> int:
            token = self.client.upload_attachment(self.storage.read(local_file.path))
            self.client.attach_to_issue(
                remote_issue_id, token, local_file.name, local_file.description
            )
            attachments = (
                self.client.get_issue(remote_issue_id, include="attachments").get("attachments")
                or []
            )
            return self._newest_entry_id(attachments, "filename", local_file.name)

        message = f"Error pushing to {project.name} a file \"{local_file.name}\""
        try:
            ext_id = self._as_author(local_file.author, write)
            self.watermarks.record_file(local_file, project, ext_id, self.now())
            self.db.commit()
            self._flush_warnings()
        except AccessError as e:
            self._fail_item(f"{message}: {e}")
            raise
        except Exception as e:
            self._fail_item(f"{message}: {e}")

    def _check_server(self, project: Project) -> None:
        if project.server_id != self.server.id:
            raise ValueError(
                f"Project {project.name} is not on server {self.server.name}"
            )
