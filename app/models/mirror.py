"""Mirror model"""

from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from app.models.base import Base


class Mirror(Base):
    """Pairing of two projects (usually on different servers) kept in sync.

    Label maps are stored per direction as ``{"<type>": {"<label id>": <label id>}}``:
    ``ltr_labels`` translates left-project labels into right-project labels and
    ``rtl_labels`` the other way around.
    """

    __tablename__ = "mirrors"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False, index=True)

    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    left_project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    right_project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)

    # Milestone assigned to issues pushed into each side.
    left_milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True)
    right_milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True)

    ltr_labels = Column(JSON, default=dict)
    rtl_labels = Column(JSON, default=dict)

    # Sync configuration
    sync_enabled = Column(Boolean, default=True)
    sync_interval_minutes = Column(Integer, default=10)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_pull_at = Column(DateTime, nullable=True)

    # Relationships
    owner = relationship("User")
    left_project = relationship("Project", foreign_keys=[left_project_id])
    right_project = relationship("Project", foreign_keys=[right_project_id])
    left_milestone = relationship("Milestone", foreign_keys=[left_milestone_id])
    right_milestone = relationship("Milestone", foreign_keys=[right_milestone_id])

    def _is_left(self, project) -> bool:
        if project.id == self.left_project_id:
            return True
        if project.id == self.right_project_id:
            return False
        raise ValueError(f"Project {project.id} is not part of mirror {self.id}")

    def other_project(self, project):
        return self.right_project if self._is_left(project) else self.left_project

    def milestone_for(self, project):
        """Milestone used for issues pushed into ``project``."""
        return self.left_milestone if self._is_left(project) else self.right_milestone

    def labels_into(self, project) -> Dict[str, Dict[str, int]]:
        """Map translating the other side's labels into ``project``'s labels."""
        labels = self.rtl_labels if self._is_left(project) else self.ltr_labels
        return labels or {}

    def labels_out_of(self, project) -> Dict[str, Dict[str, int]]:
        """Map translating ``project``'s labels into the other side's labels."""
        labels = self.ltr_labels if self._is_left(project) else self.rtl_labels
        return labels or {}

    def owner_credential(self, server_id: int):
        return self.owner.credential_for(server_id) if self.owner else None

    def __repr__(self):
        return f"<Mirror(name='{self.name}')>"


def find_in_labels(label_id: Optional[int], labels_map: Dict[str, Dict[str, int]], label_type) -> Optional[int]:
    """Look up the label a label id maps to, for one label type."""
    if label_id is None:
        return None
    type_key = getattr(label_type, "value", label_type)
    mapped = (labels_map.get(type_key) or {}).get(str(label_id))
    return int(mapped) if mapped is not None else None
