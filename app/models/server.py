"""Tracker server model"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from app.models.base import Base


class Server(Base):
    """Remote tracker server configuration"""

    __tablename__ = "servers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False, index=True)
    # Always stored with a trailing slash, e.g. "https://redmine.example/".
    base_uri = Column(String, nullable=False)
    description = Column(String, nullable=True)
    # Custom field receiving a back-link to the canonical issue on first push.
    # If unset, no back-link is stamped on this server.
    backlink_field_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def issue_url(self, ext_id) -> str:
        return f"{self.base_uri.rstrip('/')}/issues/{ext_id}"

    def __repr__(self):
        return f"<Server(name='{self.name}', base_uri='{self.base_uri}')>"
