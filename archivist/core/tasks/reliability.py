"""
Reliability Celery tasks for Archivist.

auto_recover_incidents_task is scheduled by Celery beat (see celery_app.py)
and also queued once at worker startup.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from archivist.celery_app import app as celery_app
from archivist.core.reliability.reliability_engine import reliability_engine

logger = logging.getLogger("archivist.tasks.reliability")


@celery_app.task(bind=True, name="archivist.tasks.auto_recover_incidents_task")
def auto_recover_incidents_task(self, limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Attempt recovery for open incidents and escalate the ones still open.

    Returns:
        Dict with sweep statistics:
        {
            "checked_at": str,
            "scanned": int,
            "resolved": int,
            "escalated": int,
            "errors": int
        }
    """
    checked_at = datetime.utcnow().isoformat()
    try:
        summary = asyncio.run(reliability_engine.auto_recover(limit))
        return {"checked_at": checked_at, **summary}
    except Exception as e:
        logger.error(f"Error during incident auto-recovery: {e}")
        return {"error": str(e), "checked_at": checked_at}
