"""Translation of tracker/status/priority labels between servers"""

import enum
import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.models import Issue, Label, LabelType, Mirror, Project
from app.models.mirror import find_in_labels

logger = logging.getLogger(__name__)

SYNCED_LABEL_TYPES = (LabelType.TRACKER, LabelType.STATUS, LabelType.PRIORITY)

# Remote issue attribute carrying each label type.
REMOTE_LABEL_FIELDS = {
    LabelType.TRACKER: "tracker_id",
    LabelType.STATUS: "status_id",
    LabelType.PRIORITY: "priority_id",
}


class LabelDirection(str, enum.Enum):
    """Direction of a translation, relative to a mirror project"""
    INTO = "into"
    OUT_OF = "out_of"


class LabelTranslator:
    """Resolve labels across the two sides of a mirror.

    Within one server, labels are matched directly by external id (labels are
    server-scoped). Across servers, the mirror's mapping tables decide; a label
    only translates if its target also maps back in the opposite table.
    """

    def __init__(self, db: Session):
        self.db = db

    def by_ext_id(self, ext_id, server_id: int, label_type: LabelType) -> Optional[Label]:
        if ext_id is None:
            return None
        return (
            self.db.query(Label)
            .filter(
                Label.server_id == server_id,
                Label.type == label_type,
                Label.ext_id == int(ext_id),
            )
            .first()
        )

    def by_id(self, label_id: Optional[int], label_type: LabelType) -> Optional[Label]:
        if label_id is None:
            return None
        return (
            self.db.query(Label)
            .filter(Label.id == label_id, Label.type == label_type)
            .first()
        )

    def resolve(
        self,
        label: Optional[Label],
        mirror: Mirror,
        project: Project,
        direction: LabelDirection,
    ) -> Optional[Label]:
        """Translate ``label`` into (INTO) or out of (OUT_OF) ``project``'s label space."""
        if label is None or label.type is None:
            return None
        if direction == LabelDirection.INTO:
            forward, backward = mirror.labels_into(project), mirror.labels_out_of(project)
        else:
            forward, backward = mirror.labels_out_of(project), mirror.labels_into(project)

        target_id = find_in_labels(label.id, forward, label.type)
        if target_id is None:
            return None
        if find_in_labels(target_id, backward, label.type) is None:
            return None
        return self.by_id(target_id, label.type)

    def remote_ext_id(
        self, issue: Issue, label_type: LabelType, mirror: Mirror, project: Project
    ) -> Optional[int]:
        """External id of ``issue``'s label on ``project``'s server, or None when unmapped."""
        label = issue.label(label_type)
        if label is None:
            return None
        if label.server_id == project.server_id:
            return label.ext_id
        target = self.resolve(label, mirror, project, LabelDirection.INTO)
        if target is None or target.server_id != project.server_id:
            return None
        return target.ext_id

    def local_label(
        self,
        issue: Issue,
        label_type: LabelType,
        remote_ext_id,
        mirror: Mirror,
        project: Project,
    ) -> Optional[Label]:
        """Label to attach to ``issue`` for a remote label seen on ``project``."""
        remote_label = self.by_ext_id(remote_ext_id, project.server_id, label_type)
        if remote_label is None:
            return None
        if issue.project.server_id == project.server_id:
            return remote_label
        target = self.resolve(remote_label, mirror, project, LabelDirection.OUT_OF)
        if target is None or target.server_id != issue.project.server_id:
            return None
        return target
