"""Import of projects, labels and milestones from a Redmine server"""

import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from app.models import Label, LabelType, Milestone, Project, Server
from app.services.redmine_client import RedmineClient

logger = logging.getLogger(__name__)


class CatalogImporter:
    """Upserts a server's catalog (projects, versions, trackers, statuses, priorities).

    Existing rows are matched by external id and refreshed in place, so ids
    referenced by mirrors and label maps survive a re-import.
    """

    def __init__(self, db: Session, client_factory=RedmineClient):
        self.db = db
        self.client_factory = client_factory

    def import_server(self, server: Server, api_key: str) -> Dict[str, int]:
        client = self.client_factory(server.base_uri, api_key)
        stats = {"projects": 0, "milestones": 0, "labels": 0}

        remote_projects = client.list_projects()
        projects_by_ext_id = {}
        for remote_project in remote_projects:
            project = self._upsert_project(server, remote_project)
            projects_by_ext_id[project.ext_id] = project
            stats["projects"] += 1

        # Parents may be listed after their children.
        for remote_project in remote_projects:
            parent = remote_project.get("parent")
            if parent:
                child = projects_by_ext_id[int(remote_project["id"])]
                parent_project = projects_by_ext_id.get(int(parent["id"]))
                child.parent_id = parent_project.id if parent_project else None

        for project in projects_by_ext_id.values():
            for version in client.list_versions(project.ext_id):
                # Shared versions are listed under every project that can see them.
                if (version.get("project") or {}).get("id") not in (None, project.ext_id):
                    continue
                self._upsert_milestone(project, version)
                stats["milestones"] += 1

        for tracker in client.list_trackers():
            self._upsert_label(server, LabelType.TRACKER, tracker)
            stats["labels"] += 1
        for status in client.list_statuses():
            self._upsert_label(server, LabelType.STATUS, status, is_closed=bool(status.get("is_closed")))
            stats["labels"] += 1
        for priority in client.list_priorities():
            self._upsert_label(server, LabelType.PRIORITY, priority, is_default=bool(priority.get("is_default")))
            stats["labels"] += 1

        self.db.commit()
        logger.info(f"Imported catalog of {server.name}: {stats}")
        return stats

    def _upsert_project(self, server: Server, remote_project: Dict[str, Any]) -> Project:
        project = (
            self.db.query(Project)
            .filter(Project.server_id == server.id, Project.ext_id == int(remote_project["id"]))
            .first()
        )
        if project is None:
            project = Project(server_id=server.id, ext_id=int(remote_project["id"]))
            self.db.add(project)
        project.name = remote_project["name"]
        project.slug = remote_project.get("identifier")
        project.description = remote_project.get("description")
        self.db.flush()
        return project

    def _upsert_milestone(self, project: Project, version: Dict[str, Any]) -> Milestone:
        milestone = (
            self.db.query(Milestone)
            .filter(Milestone.project_id == project.id, Milestone.ext_id == int(version["id"]))
            .first()
        )
        if milestone is None:
            milestone = Milestone(project_id=project.id, ext_id=int(version["id"]))
            self.db.add(milestone)
        milestone.name = version["name"]
        return milestone

    def _upsert_label(
        self,
        server: Server,
        label_type: LabelType,
        remote_label: Dict[str, Any],
        *,
        is_closed: bool = False,
        is_default: bool = False,
    ) -> Label:
        label = (
            self.db.query(Label)
            .filter(
                Label.server_id == server.id,
                Label.type == label_type,
                Label.ext_id == int(remote_label["id"]),
            )
            .first()
        )
        if label is None:
            label = Label(server_id=server.id, type=label_type, ext_id=int(remote_label["id"]))
            self.db.add(label)
        label.name = remote_label["name"]
        label.is_closed = is_closed
        label.is_default = is_default
        return label
