"""
Failure Classifier - maps an exception raised during a build attempt onto the
FailureReason taxonomy.

Classification is pure and total: every input yields exactly one reason and
nothing here touches the database or the network. Known exception types are
checked first; the message patterns below catch the same conditions when they
arrive wrapped in a generic exception (e.g. re-raised by a worker pool or
serialized across a task boundary).
"""

import errno
import re
from typing import List, Pattern, Tuple

from celery.exceptions import (
    MaxRetriesExceededError,
    SoftTimeLimitExceeded,
    TimeLimitExceeded,
)
from minio.error import S3Error

from archivist.core.models import FailureReason
from archivist.core.storage.object_source import ObjectPermissionError, ObjectReadError

from .errors import AttemptBudgetExceededError

_TIMEOUT_TYPES = (
    SoftTimeLimitExceeded,
    TimeLimitExceeded,
    MaxRetriesExceededError,
    AttemptBudgetExceededError,
    TimeoutError,
)

# Checked in order; permission patterns come before read patterns because an
# S3 "access denied" is also a failed read.
_MESSAGE_PATTERNS: List[Tuple[Pattern, FailureReason]] = [
    (re.compile(r"timed out|time limit|timeout", re.I), FailureReason.TIMEOUT),
    (re.compile(r"exceeded the maximum number of attempts", re.I), FailureReason.TIMEOUT),
    (re.compile(r"no space left on device", re.I), FailureReason.DISK_FULL),
    (re.compile(r"permission denied|access denied|accessdenied|forbidden", re.I), FailureReason.PERMISSION_ERROR),
    (re.compile(r"getobject|nosuchkey|error executing|failed to read", re.I), FailureReason.S3_READ_ERROR),
]


def classify(error: BaseException) -> FailureReason:
    """
    Classify a build failure.

    Args:
        error: Exception caught at the top of a build attempt

    Returns:
        FailureReason, UNKNOWN when nothing matches
    """
    if isinstance(error, _TIMEOUT_TYPES):
        return FailureReason.TIMEOUT

    if isinstance(error, OSError) and error.errno == errno.ENOSPC:
        return FailureReason.DISK_FULL

    if isinstance(error, (ObjectPermissionError, PermissionError)):
        return FailureReason.PERMISSION_ERROR

    if isinstance(error, (ObjectReadError, S3Error)):
        if isinstance(error, S3Error) and error.code == "AccessDenied":
            return FailureReason.PERMISSION_ERROR
        return FailureReason.S3_READ_ERROR

    message = str(error)
    for pattern, reason in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return reason

    return FailureReason.UNKNOWN
