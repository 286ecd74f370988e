"""Database module for the bulk merge service."""

from .models import (
    Base,
    MergeOperation,
    MergeOperationItem,
    PullRequest,
    Repository,
    UserSettings,
)
from .session import create_all, make_engine, make_session_factory

__all__ = [
    "Base",
    "MergeOperation",
    "MergeOperationItem",
    "PullRequest",
    "Repository",
    "UserSettings",
    "create_all",
    "make_engine",
    "make_session_factory",
]
