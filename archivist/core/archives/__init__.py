"""
Archive builds: chunked resumable ZIP assembly, failure classification and
recording, build escalation, regeneration and the diagnostic agent.
"""

from .build_service import ArchiveBuildService, archive_build_service, plan_entry_names
from .diagnostic_agent import ArchiveFailureAgent, archive_failure_agent
from .errors import (
    ArchiveBuildError,
    ArchiveIntegrityError,
    AttemptBudgetExceededError,
    BuildJobNotFoundError,
    EmptyArchiveError,
    RegenerationRejectedError,
)
from .escalation_service import ArchiveEscalationService, archive_escalation_service
from .failure_classifier import classify
from .failure_recorder import record_failure
from .management_service import ArchiveManagementService, archive_management_service

__all__ = [
    "ArchiveBuildService",
    "archive_build_service",
    "plan_entry_names",
    "ArchiveFailureAgent",
    "archive_failure_agent",
    "ArchiveBuildError",
    "ArchiveIntegrityError",
    "AttemptBudgetExceededError",
    "BuildJobNotFoundError",
    "EmptyArchiveError",
    "RegenerationRejectedError",
    "ArchiveEscalationService",
    "archive_escalation_service",
    "classify",
    "record_failure",
    "ArchiveManagementService",
    "archive_management_service",
]
