"""Services"""

from app.services.catalog import CatalogImporter
from app.services.redmine_client import AccessError, RedmineClient, RedmineError
from app.services.sync_service import SyncService
from app.services.synchronizer import RedmineSynchronizer

__all__ = [
    "AccessError",
    "CatalogImporter",
    "RedmineClient",
    "RedmineError",
    "RedmineSynchronizer",
    "SyncService",
]
