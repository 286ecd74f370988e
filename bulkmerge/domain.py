"""Shared vocabulary of the bulk merge engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class MergeStrategy(str, Enum):
    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"

    @classmethod
    def parse(cls, value: str | None) -> MergeStrategy | None:
        """Return the strategy named by `value`, or None if unrecognised."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class PullRequestState(str, Enum):
    """Pull request state, both as cached locally and as reported remotely."""

    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


class OperationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationStatus.IN_PROGRESS


class ItemStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not ItemStatus.PENDING


@dataclass(frozen=True)
class PullRequestRef:
    """Provider-qualified address of one pull request."""

    provider: str
    owner: str
    name: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def repository_key(self) -> str:
        return f"{self.provider}:{self.full_name}"

    def __str__(self) -> str:
        return f"{self.repository_key}#{self.number}"


@dataclass(frozen=True)
class MergeResult:
    """What a provider reported after a merge call that did not raise."""

    merged: bool
    sha: str | None = None
    message: str = ""
