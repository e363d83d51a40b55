"""Run one reconciliation pass over every enabled mirror, then exit.

Intended for cron-style deployments that do not run the API server.

Usage:
  python scripts/sync_all.py [--mirror ID ...]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--mirror",
        type=int,
        action="append",
        dest="mirror_ids",
        help="Only sync this mirror (repeatable)",
    )
    args = parser.parse_args(argv)

    from app.config import settings  # noqa: WPS433
    from app.models.base import SessionLocal, init_db  # noqa: WPS433
    from app.services.sync_service import SyncService  # noqa: WPS433

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger("sync_all")

    init_db()
    db = SessionLocal()
    try:
        service = SyncService(db)
        if args.mirror_ids:
            results = {mirror_id: service.sync_mirror(mirror_id) for mirror_id in args.mirror_ids}
        else:
            results = service.sync_all()
    except ValueError as e:
        logger.error(str(e))
        return 2
    finally:
        db.close()

    failed = [mirror_id for mirror_id, result in results.items() if result["status"] == "failed"]
    for mirror_id, result in results.items():
        logger.info(f"Mirror {mirror_id}: {result}")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
