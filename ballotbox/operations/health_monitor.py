# ballotbox/operations/health_monitor.py
# Liveness/readiness checks (database, disk)

import os
import shutil
import logging
from typing import Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ballotbox import db

logger = logging.getLogger(__name__)

MIN_FREE_DISK_GB = float(os.getenv("MIN_FREE_DISK_GB", "1"))


def _check_db() -> Dict:
    try:
        db.session.execute(text("SELECT 1"))
        # the tally view is what the admin dashboard reads
        db.session.execute(text("SELECT COUNT(*) FROM vote_counts"))
        return {"ok": True, "detail": "database ok"}
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Health check database query failed: %s", e)
        return {"ok": False, "error": "database unavailable"}


def _check_disk(path=".") -> Dict:
    total, used, free = shutil.disk_usage(path)
    free_gb = free / (1024**3)
    return {"ok": free_gb >= MIN_FREE_DISK_GB, "free_gb": round(free_gb, 2), "min_required_gb": MIN_FREE_DISK_GB}


def check_health(audit_dir=".") -> Dict:
    """Aggregate overall system health."""
    database = _check_db()
    disk = _check_disk(audit_dir if os.path.isdir(audit_dir) else ".")
    return {"db": database, "disk": disk, "overall_ok": database["ok"] and disk["ok"]}
