"""Bulk merge engine services."""

from .grouping import PacingController, WorkItem, group_by_repository
from .preflight import PreflightResult, PreflightVerifier
from .runner import OperationRunner
from .status import StatusReporter

__all__ = [
    "PacingController",
    "WorkItem",
    "group_by_repository",
    "PreflightResult",
    "PreflightVerifier",
    "OperationRunner",
    "StatusReporter",
]
