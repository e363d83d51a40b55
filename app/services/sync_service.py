"""Reconciliation runs over mirrors"""

import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models import Mirror, Server, SyncLog
from app.models.sync_log import SyncStatus
from app.services.redmine_client import RedmineClient
from app.services.storage import LocalFileStorage
from app.services.synchronizer import RedmineSynchronizer
from app.services.watermarks import WatermarkStore

logger = logging.getLogger(__name__)

# Mirrors with a run in progress in this process.
_running_mirrors = set()
_running_lock = threading.Lock()


class SyncService:
    """Service for reconciling both sides of a mirror"""

    def __init__(
        self,
        db: Session,
        *,
        client_factory=RedmineClient,
        storage: Optional[LocalFileStorage] = None,
        target_timezone: Optional[str] = None,
    ):
        self.db = db
        self.client_factory = client_factory
        self.storage = storage or LocalFileStorage()
        self.target_timezone = target_timezone or settings.target_timezone
        self.watermarks = WatermarkStore(db)

    def _synchronizer(self, server: Server) -> RedmineSynchronizer:
        return RedmineSynchronizer(
            self.db,
            server,
            target_timezone=self.target_timezone,
            storage=self.storage,
            client_factory=self.client_factory,
        )

    def sync_mirror(self, mirror_id: int) -> Dict[str, Any]:
        """Pull both sides, then push both sides.

        Pulls must both complete before anything is pushed, so that local
        records already reflect remote changes when push decides what is stale.
        """
        mirror = self.db.query(Mirror).filter(Mirror.id == mirror_id).first()
        if not mirror:
            raise ValueError(f"Mirror {mirror_id} not found")

        if not mirror.sync_enabled:
            logger.info(f"Sync disabled for mirror {mirror.name}")
            return {"status": "skipped", "message": "Sync disabled"}

        with _running_lock:
            if mirror.id in _running_mirrors:
                logger.info(f"Sync already running for mirror {mirror.name}")
                return {"status": "skipped", "message": "Sync already running"}
            _running_mirrors.add(mirror.id)

        try:
            return self._run(mirror)
        finally:
            with _running_lock:
                _running_mirrors.discard(mirror.id)

    def _run(self, mirror: Mirror) -> Dict[str, Any]:
        logger.info(f"Starting sync for mirror: {mirror.name}")
        left, right = mirror.left_project, mirror.right_project
        left_sync = self._synchronizer(left.server)
        right_sync = self._synchronizer(right.server)

        started_at = left_sync.now()
        updated_since = None
        if mirror.last_pull_at is not None:
            # Overlap absorbs clock skew between servers; re-pulls are no-ops.
            updated_since = mirror.last_pull_at - timedelta(minutes=settings.pull_overlap_minutes)

        logs: List[SyncLog] = []
        try:
            logs.append(left_sync.pull(left, mirror, updated_since=updated_since))
            logs.append(right_sync.pull(right, mirror, updated_since=updated_since))

            mirror.last_pull_at = started_at
            self.db.commit()

            logs.append(right_sync.push(self.watermarks.issues_to_push(left, right), right, mirror))
            logs.append(left_sync.push(self.watermarks.issues_to_push(right, left), left, mirror))
        except Exception as e:
            self.db.rollback()
            logger.error(f"Sync failed for {mirror.name}: {e}")
            return {"status": "failed", "error": str(e), "logs": [log.id for log in logs]}

        errors = sum(len(log.errors) for log in logs)
        status = (
            "success"
            if all(log.status == SyncStatus.SUCCESS for log in logs)
            else "finished_with_errors"
        )
        logger.info(f"Sync completed for {mirror.name}: {status}, {errors} error(s)")
        return {"status": status, "errors": errors, "logs": [log.id for log in logs]}

    def sync_all(self) -> Dict[int, Dict[str, Any]]:
        """Run every enabled mirror once, in id order."""
        mirrors = (
            self.db.query(Mirror).filter(Mirror.sync_enabled == True).order_by(Mirror.id).all()
        )
        return {mirror.id: self.sync_mirror(mirror.id) for mirror in mirrors}
