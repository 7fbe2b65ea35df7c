"""
Celery tasks package for Archivist.

Celery discovers tasks via the include= list in celery_app.py, which
references each submodule directly; the names are re-exported here.
"""

# Archive build tasks
from archivist.core.tasks.archives import (
    build_archive_task,
    run_archive_failure_agent_task,
)

# Reliability tasks
from archivist.core.tasks.reliability import (
    auto_recover_incidents_task,
)

__all__ = [
    "build_archive_task",
    "run_archive_failure_agent_task",
    "auto_recover_incidents_task",
]
