# archivist/core/database/__init__.py
"""
Database package for Archivist.

Provides the SQLAlchemy declarative base and models.
"""

from .base import Base
from .models import (
    AgentRun,
    BuildJob,
    Incident,
    PipelineAsset,
    Ticket,
)

__all__ = [
    "Base",
    "BuildJob",
    "Incident",
    "Ticket",
    "AgentRun",
    "PipelineAsset",
]
