"""Per-repository partitioning and pacing of merge attempts."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from ..core.logging import get_logger
from ..db.models import MergeOperationItem
from ..domain import PullRequestRef

logger = get_logger(__name__)


@dataclass(frozen=True)
class WorkItem:
    """One pending item, detached from its ORM row."""

    item_id: str
    position: int
    pull_request_id: str | None
    ref: PullRequestRef

    @classmethod
    def from_row(cls, row: MergeOperationItem) -> WorkItem:
        return cls(
            item_id=row.id,
            position=row.position,
            pull_request_id=row.pull_request_id,
            ref=row.ref,
        )


def group_by_repository(items: Iterable[WorkItem]) -> dict[str, list[WorkItem]]:
    """Partition items by repository key.

    Groups appear in order of their first item; items inside a group keep
    submission order.
    """
    groups: dict[str, list[WorkItem]] = {}
    for item in sorted(items, key=lambda i: i.position):
        groups.setdefault(item.ref.repository_key, []).append(item)
    return groups


class PacingController:
    """Enforces a minimum gap between consecutive merge attempts in one group.

    The gap runs from the end of one attempt to the start of the next item.
    Skipped items never call `record_attempt`, so they neither wait nor
    delay the item after them.
    """

    def __init__(
        self,
        delay_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.delay_seconds = max(0.0, float(delay_seconds))
        self._clock = clock
        self._sleep = sleep
        self._last_attempt_end: float | None = None

    async def wait_turn(self) -> float:
        """Sleep until the delay since the last attempt has elapsed. Returns seconds slept."""
        if self._last_attempt_end is None or self.delay_seconds <= 0:
            return 0.0
        remaining = self.delay_seconds - (self._clock() - self._last_attempt_end)
        if remaining <= 0:
            return 0.0
        logger.debug("Pacing before next merge", data={"sleep_seconds": round(remaining, 3)})
        await self._sleep(remaining)
        return remaining

    def record_attempt(self) -> None:
        self._last_attempt_end = self._clock()
