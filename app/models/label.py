"""Label (classification) model"""
from sqlalchemy import Boolean, Column, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
import enum
from app.models.base import Base


class LabelType(str, enum.Enum):
    """Classification kinds synchronized between trackers"""
    TRACKER = "tracker"
    STATUS = "status"
    PRIORITY = "priority"


class Label(Base):
    """Server-scoped enumeration value.

    Labels belong to a server, not a project: every project on a server shares
    the same trackers, statuses and priorities. A null ``type`` is a plain,
    unclassified label.
    """

    __tablename__ = "labels"
    __table_args__ = (
        UniqueConstraint("server_id", "type", "ext_id", name="uq_labels_server_type_ext_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    server_id = Column(Integer, ForeignKey("servers.id"), nullable=False, index=True)
    type = Column(Enum(LabelType), nullable=True)
    ext_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    is_closed = Column(Boolean, default=False)
    is_default = Column(Boolean, default=False)

    server = relationship("Server")

    def __repr__(self):
        return f"<Label(type={self.type}, name='{self.name}')>"
