"""Local blob storage for issue attachments"""

import logging
import uuid
from pathlib import Path

from app.config import settings

logger = logging.getLogger(__name__)


class LocalFileStorage:
    """Stores attachment bytes on disk under a root directory.

    Paths handed out by ``generate_path`` are relative to the root and unique.
    """

    def __init__(self, root: str = None):
        self.root = Path(root or settings.files_root)

    @staticmethod
    def generate_path(filename: str) -> str:
        safe_name = Path(filename or "file").name
        return f"files/{uuid.uuid4().hex}{safe_name}"

    def _resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if self.root.resolve() not in full.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return full

    def put(self, path: str, content: bytes) -> None:
        full = self._resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(content)
        logger.debug(f"Stored {len(content)} bytes at {path}")

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()
