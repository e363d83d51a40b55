"""Project and milestone models"""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.models.base import Base


class Project(Base):
    """Project living on a tracker server"""

    __tablename__ = "projects"
    __table_args__ = (
        UniqueConstraint("server_id", "ext_id", name="uq_projects_server_ext_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    server_id = Column(Integer, ForeignKey("servers.id"), nullable=False)
    ext_id = Column(Integer, nullable=False)
    parent_id = Column(Integer, ForeignKey("projects.id"), nullable=True)
    slug = Column(String, nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    server = relationship("Server")
    milestones = relationship("Milestone", back_populates="project")

    def __repr__(self):
        return f"<Project(name='{self.name}', ext_id={self.ext_id})>"


class Milestone(Base):
    """Project milestone (Redmine "version")"""

    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("project_id", "ext_id", name="uq_milestones_project_ext_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    ext_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)

    project = relationship("Project", back_populates="milestones")

    def __repr__(self):
        return f"<Milestone(name='{self.name}', ext_id={self.ext_id})>"
