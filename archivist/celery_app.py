"""
Celery application setup for Archivist.

Configures Celery from the shared settings so workers and callers use the
same broker/result backend. Tasks live in archivist.core.tasks.

Queue Architecture:
- archives: archive build attempts and failure diagnostics
- maintenance: scheduled reliability sweeps (non-blocking)

Delivery is at-least-once (acks_late): a build attempt can be redelivered
after a worker crash, which the chunk checkpoints make safe.
"""
import logging
import os

from celery import Celery
from celery.signals import worker_ready
from kombu import Queue

from archivist.config import settings


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


app = Celery(
    "archivist",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "archivist.core.tasks.archives",
        "archivist.core.tasks.reliability",
    ],
)

app.conf.task_queues = (
    Queue("archives", routing_key="archives"),
    Queue("maintenance", routing_key="maintenance"),
)

app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=settings.celery_task_soft_time_limit,
    task_time_limit=settings.celery_task_time_limit,
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "259200")),  # 3 days
    task_default_queue="archives",
    task_routes={
        "archivist.tasks.build_archive_task": {"queue": "archives"},
        "archivist.tasks.run_archive_failure_agent_task": {"queue": "archives"},
        "archivist.tasks.auto_recover_incidents_task": {"queue": "maintenance"},
    },
)

# ============================================================================
# Celery Beat Schedule (for periodic tasks)
# ============================================================================

beat_schedule = {}

if settings.reliability_recovery_enabled:
    beat_schedule["auto-recover-incidents"] = {
        "task": "archivist.tasks.auto_recover_incidents_task",
        "schedule": settings.reliability_recovery_interval,  # Every N seconds (default: 900 = 15 min)
        "kwargs": {"limit": settings.reliability_recovery_batch},
        "options": {"queue": "maintenance"},
    }

app.conf.beat_schedule = beat_schedule

app.conf.timezone = "UTC"


# ============================================================================
# WORKER STARTUP RECOVERY
# ============================================================================
# Builds interrupted by a worker crash stay BUILDING until redelivered; a sweep
# at startup also picks up their incidents.

_recovery_logger = logging.getLogger("archivist.celery.recovery")


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    """Schedule an auto-recovery sweep shortly after the worker starts."""
    if not _bool(os.getenv("CELERY_STARTUP_RECOVERY_ENABLED", "true"), True):
        _recovery_logger.info("Startup recovery disabled via CELERY_STARTUP_RECOVERY_ENABLED")
        return

    from archivist.core.tasks.reliability import auto_recover_incidents_task

    # Delay by 10 seconds so the database and broker connections are up
    auto_recover_incidents_task.apply_async(
        kwargs={"limit": settings.reliability_recovery_batch},
        countdown=10,
    )
    _recovery_logger.info("Startup incident recovery sweep scheduled")
