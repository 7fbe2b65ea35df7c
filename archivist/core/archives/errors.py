"""
Archive build exceptions.

Hard errors (BuildJobNotFoundError, EmptyArchiveError) describe a request that
can never succeed and are raised to the caller without touching the job's
fault history. Everything else raised inside an attempt is treated as a
recoverable fault: classified, recorded and escalated by the controller.
"""

from typing import Optional


class ArchiveBuildError(Exception):
    """Base class for archive build errors."""


class BuildJobNotFoundError(ArchiveBuildError):
    def __init__(self, build_id):
        super().__init__(f"Build job not found: {build_id}")
        self.build_id = build_id


class EmptyArchiveError(ArchiveBuildError):
    """The build job references no objects; there is nothing to archive."""

    def __init__(self, build_id):
        super().__init__(f"Build job {build_id} has no objects to archive")
        self.build_id = build_id


class ArchiveIntegrityError(ArchiveBuildError):
    """The finished scratch archive does not contain the expected entries."""

    def __init__(self, build_id, expected: int, actual: int):
        super().__init__(
            f"Archive for build {build_id} has {actual} entries, expected {expected}"
        )
        self.build_id = build_id
        self.expected = expected
        self.actual = actual


class AttemptBudgetExceededError(ArchiveBuildError):
    """Raised when a build has used up its queue attempts."""

    def __init__(self, build_id, attempts: int):
        super().__init__(
            f"Build {build_id} exceeded the maximum number of attempts ({attempts})"
        )
        self.build_id = build_id
        self.attempts = attempts


class RegenerationRejectedError(ValueError):
    """
    Regeneration is not allowed for this build.

    Raised once a build has failed too many times or has an escalation ticket.
    Not retryable: the caller must wait for the ticket to be worked.
    """

    def __init__(self, build_id, reason: str, ticket_id: Optional[str] = None):
        super().__init__(f"Cannot regenerate build {build_id}: {reason}")
        self.build_id = build_id
        self.reason = reason
        self.ticket_id = ticket_id
