"""Deterministic mock provider for tests, CI and local demos."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Callable

from ..core.exceptions import ProviderError
from ..domain import MergeResult, MergeStrategy, PullRequestRef
from .base import BaseProvider, ProviderType, RemoteState


@dataclass(frozen=True)
class MockCall:
    action: str  # "fetch" | "merge"
    ref: PullRequestRef
    at: float
    strategy: MergeStrategy | None = None
    delete_branch: bool | None = None


class MockProvider(BaseProvider):
    """Scriptable in-memory gateway.

    Unknown refs are open and mergeable. A successful merge flips the ref to
    merged, so a second merge of the same ref is seen as already merged.
    """

    provider_type = ProviderType.MOCK

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._states: dict[PullRequestRef, RemoteState] = {}
        self._fetch_errors: dict[PullRequestRef, ProviderError] = {}
        self._merge_errors: dict[PullRequestRef, ProviderError] = {}
        self._not_merged: dict[PullRequestRef, str] = {}
        self.calls: list[MockCall] = []

    # -- scripting -----------------------------------------------------------
    def set_state(self, ref: PullRequestRef, state: RemoteState) -> None:
        self._states[ref] = state

    def fail_fetch(self, ref: PullRequestRef, message: str, kind: str = ProviderError.NETWORK) -> None:
        self._fetch_errors[ref] = ProviderError(message, kind=kind, provider="mock")

    def fail_merge(self, ref: PullRequestRef, message: str, kind: str = ProviderError.CONFLICT) -> None:
        self._merge_errors[ref] = ProviderError(message, kind=kind, provider="mock")

    def refuse_merge(self, ref: PullRequestRef, message: str = "Merge not completed") -> None:
        """Answer the merge call without merging (provider returned merged=false)."""
        self._not_merged[ref] = message

    def calls_for(self, action: str) -> list[MockCall]:
        return [c for c in self.calls if c.action == action]

    # -- gateway -------------------------------------------------------------
    async def fetch_state(self, ref: PullRequestRef) -> RemoteState:
        self.calls.append(MockCall("fetch", ref, self._clock()))
        if ref in self._fetch_errors:
            raise self._fetch_errors[ref]
        return self._states.get(ref, RemoteState.OPEN)

    async def merge(
        self, ref: PullRequestRef, strategy: MergeStrategy, delete_branch: bool
    ) -> MergeResult:
        self.calls.append(MockCall("merge", ref, self._clock(), strategy, delete_branch))
        if ref in self._merge_errors:
            raise self._merge_errors[ref]
        if ref in self._not_merged:
            return MergeResult(merged=False, message=self._not_merged[ref])
        if self._states.get(ref, RemoteState.OPEN) is not RemoteState.OPEN:
            raise ProviderError(
                f"Pull request {ref} is not open", kind=ProviderError.VALIDATION, provider="mock"
            )
        self._states[ref] = RemoteState.MERGED
        sha = hashlib.sha1(f"{ref}:{strategy.value}".encode()).hexdigest()
        return MergeResult(merged=True, sha=sha, message="Merged successfully")
