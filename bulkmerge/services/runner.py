"""Bulk merge operation lifecycle: submission, background execution, finalization."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import BulkMergeError, PersistenceFault, ProviderError, SubmissionRejected
from ..core.logging import bind_context, get_logger, log_context
from ..core.settings import Settings
from ..core.time import utcnow
from ..db.models import MergeOperation
from ..domain import ItemStatus, MergeStrategy, OperationStatus, PullRequestState
from ..providers.registry import ProviderRegistry
from ..repositories import (
    OperationStore,
    SQLAlchemyOperationRepository,
    SQLAlchemyPullRequestRepository,
    SQLAlchemyUserSettingsRepository,
)
from .grouping import PacingController, WorkItem, group_by_repository
from .preflight import PreflightVerifier

logger = get_logger(__name__)

INTERRUPTED_MESSAGE = "interrupted"


@dataclass(frozen=True)
class ExecutionOptions:
    strategy: MergeStrategy
    delete_branch: bool
    merge_delay_seconds: int

    @classmethod
    def from_operation(cls, operation: MergeOperation) -> ExecutionOptions:
        return cls(
            strategy=MergeStrategy.parse(operation.strategy) or MergeStrategy.SQUASH,
            delete_branch=bool(operation.delete_branch),
            merge_delay_seconds=operation.merge_delay_seconds or 0,
        )


@dataclass
class ItemOutcome:
    item_id: str
    status: ItemStatus
    completed_at: datetime
    error_message: Optional[str] = None
    skip_reason: Optional[str] = None
    merge_commit_id: Optional[str] = None
    merged_at: Optional[datetime] = None
    attempted_at: Optional[datetime] = None

    def to_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "item_id": self.item_id,
            "status": self.status,
            "error_message": self.error_message,
            "skip_reason": self.skip_reason,
            "merge_commit_id": self.merge_commit_id,
            "merged_at": self.merged_at,
            "completed_at": self.completed_at,
        }
        if self.attempted_at is not None:
            fields["attempted_at"] = self.attempted_at
        return fields


class OperationRunner:
    """Owns every write to a merge operation after it is submitted.

    `submit` validates and persists synchronously, then hands the operation
    to a background task and returns. Operations run in at most
    `max_concurrent_operations` tasks at once; their repository groups share
    a process-wide pool of `max_concurrent_groups` slots. Within a group,
    items run strictly in submission order with pacing between attempts.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._sf = session_factory
        self.registry = registry
        self.settings = settings
        self.store = OperationStore(session_factory)
        self.preflight = PreflightVerifier(registry)
        self._clock = clock
        self._sleep = sleep
        self._operation_slots = asyncio.Semaphore(settings.max_concurrent_operations)
        self._group_slots = asyncio.Semaphore(settings.max_concurrent_groups)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closing = False

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    async def submit(
        self,
        requester_id: str,
        pull_request_ids: Sequence[str],
        strategy: Optional[str] = None,
        delete_branch: Optional[bool] = None,
    ) -> MergeOperation:
        """Validate, persist and schedule a bulk merge.

        Raises SubmissionRejected before anything is written if the batch is
        empty, larger than `max_batch_size`, or references a pull request that
        is unknown or belongs to someone else. Duplicate ids are collapsed,
        keeping the first occurrence.
        """
        if self._closing:
            raise BulkMergeError("Service is shutting down", status_code=503, code="E5030")

        if not pull_request_ids:
            raise SubmissionRejected.empty()
        max_batch = self.settings.max_batch_size
        if len(pull_request_ids) > max_batch:
            raise SubmissionRejected.too_many(max_batch)
        unique_ids = list(dict.fromkeys(str(pr_id) for pr_id in pull_request_ids))

        try:
            async with self._sf() as session:
                async with session.begin():
                    prs = await SQLAlchemyPullRequestRepository(session).get_many(unique_ids)
                    ordered = []
                    for pr_id in unique_ids:
                        pr = prs.get(pr_id)
                        if pr is None:
                            raise SubmissionRejected.not_found(pr_id)
                        if pr.repository.owner_id != requester_id:
                            raise SubmissionRejected.not_owned(pr_id)
                        ordered.append(pr)

                    defaults = await SQLAlchemyUserSettingsRepository(
                        session, self.settings
                    ).merge_defaults(requester_id)
                    effective_strategy = MergeStrategy.parse(strategy)
                    if strategy and effective_strategy is None:
                        logger.warning(
                            "Unknown merge strategy; using requester default",
                            data={"strategy": strategy, "default": defaults.strategy.value},
                        )
                    operation = await SQLAlchemyOperationRepository(session).create(
                        owner_id=requester_id,
                        strategy=effective_strategy or defaults.strategy,
                        delete_branch=defaults.delete_branch if delete_branch is None else delete_branch,
                        merge_delay_seconds=defaults.merge_delay_seconds,
                        pull_requests=ordered,
                    )
        except SQLAlchemyError as exc:
            logger.error("Failed to persist merge operation", data={"error": str(exc)}, exc_info=True)
            raise PersistenceFault(f"Failed to persist merge operation: {exc}") from exc

        logger.info(
            "Merge operation accepted",
            data={
                "operation_id": operation.id,
                "requester_id": requester_id,
                "total": operation.total_count,
                "duplicates_dropped": len(pull_request_ids) - len(unique_ids),
                "strategy": operation.strategy,
                "delete_branch": operation.delete_branch,
                "merge_delay_seconds": operation.merge_delay_seconds,
            },
        )
        self._spawn(operation.id)
        return operation

    def _spawn(self, operation_id: str) -> None:
        task = asyncio.create_task(self._run(operation_id), name=f"merge-operation:{operation_id}")
        self._tasks[operation_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(operation_id, None))

    async def _run(self, operation_id: str) -> None:
        token = bind_context(operation_id=operation_id)
        try:
            async with self._operation_slots:
                await self.execute(operation_id)
        except asyncio.CancelledError:
            logger.warning("Merge operation interrupted")
            await self._fail_operation(operation_id, INTERRUPTED_MESSAGE)
            raise
        except Exception as exc:
            logger.error("Merge operation crashed", data={"error": str(exc)}, exc_info=True)
            await self._fail_operation(operation_id, f"Internal error: {exc}")
        finally:
            log_context.reset(token)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(self, operation_id: str) -> None:
        """Run every pending item of an operation and write its terminal status once."""
        try:
            operation = await self.store.get_operation(operation_id)
            rows = await self.store.get_items(operation_id) if operation else []
        except PersistenceFault as exc:
            logger.error("Could not load merge operation", data={"error": exc.message})
            await self._fail_operation(operation_id, exc.message)
            return

        if operation is None:
            logger.warning("Merge operation not found; nothing to execute")
            return
        if operation.status.is_terminal:
            logger.info("Merge operation already terminal", data={"status": operation.status.value})
            return

        options = ExecutionOptions.from_operation(operation)
        # Items finished before a restart still count toward the totals
        counts: Counter = Counter(row.status for row in rows if row.status.is_terminal)

        pending = [WorkItem.from_row(row) for row in rows if row.status is ItemStatus.PENDING]
        groups = group_by_repository(pending)
        logger.info(
            "Executing merge operation",
            data={"items": len(pending), "groups": len(groups), "strategy": options.strategy.value},
        )

        unflushed: List[Dict[str, Any]] = []
        group_results = await asyncio.gather(
            *(self._run_group(operation_id, key, items, options, unflushed) for key, items in groups.items())
        )
        for outcomes in group_results:
            counts.update(outcome.status for outcome in outcomes)

        fault = await self._finalize_completed(operation_id, counts, unflushed)
        if fault is not None:
            await self._fail_operation(
                operation_id, f"Could not write terminal status: {fault.message}", unflushed
            )
            return

        logger.info(
            "Merge operation completed",
            data={
                "total": operation.total_count,
                "success": counts[ItemStatus.SUCCESS],
                "failed": counts[ItemStatus.FAILED],
                "skipped": counts[ItemStatus.SKIPPED],
            },
        )

    async def _finalize_completed(
        self, operation_id: str, counts: Counter, unflushed: List[Dict[str, Any]]
    ) -> Optional[PersistenceFault]:
        """Write the Completed status, retrying with backoff. Returns the last fault if every attempt failed."""
        attempts = self.settings.finalize_attempts
        fault: Optional[PersistenceFault] = None
        for attempt in range(1, attempts + 1):
            try:
                await self.store.finalize(
                    operation_id,
                    OperationStatus.COMPLETED,
                    completed_at=utcnow(),
                    success_count=counts[ItemStatus.SUCCESS],
                    failed_count=counts[ItemStatus.FAILED],
                    skipped_count=counts[ItemStatus.SKIPPED],
                    unflushed=unflushed,
                )
                return None
            except PersistenceFault as exc:
                fault = exc
                logger.error(
                    "Could not write terminal status",
                    data={
                        "attempt": attempt,
                        "attempts": attempts,
                        "error": exc.message,
                        "unflushed_items": len(unflushed),
                    },
                )
                if attempt < attempts:
                    await self._sleep(self.settings.finalize_retry_backoff_seconds * 2 ** (attempt - 1))
        return fault

    async def _run_group(
        self,
        operation_id: str,
        repository_key: str,
        items: List[WorkItem],
        options: ExecutionOptions,
        unflushed: List[Dict[str, Any]],
    ) -> List[ItemOutcome]:
        outcomes: List[ItemOutcome] = []
        async with self._group_slots:
            pacer = PacingController(options.merge_delay_seconds, clock=self._clock, sleep=self._sleep)
            logger.debug("Starting repository group", data={"repository": repository_key, "items": len(items)})
            for item in items:
                await pacer.wait_turn()
                outcome = await self._process_item(item, options, pacer)
                await self._persist_outcome(operation_id, outcome, unflushed)
                outcomes.append(outcome)
        return outcomes

    async def _process_item(
        self, item: WorkItem, options: ExecutionOptions, pacer: PacingController
    ) -> ItemOutcome:
        ref = item.ref

        try:
            local_state = await self.store.get_pull_request_state(item.pull_request_id)
        except PersistenceFault as exc:
            logger.warning("Could not read cached PR state", data={"ref": str(ref), "error": exc.message})
            local_state = None

        try:
            check = await self.preflight.verify(ref, local_state)
        except ProviderError as exc:
            return self._failed(item, f"Preflight check failed: {exc.message}")
        except Exception as exc:
            logger.error("Preflight crashed", data={"ref": str(ref)}, exc_info=True)
            return self._failed(item, f"Preflight check failed: {exc}")

        if check.local_update is not None and item.pull_request_id:
            await self._correct_cache(item, check.local_update)

        if check.skip:
            logger.info("Skipping pull request", data={"ref": str(ref), "reason": check.reason})
            return ItemOutcome(
                item_id=item.item_id,
                status=ItemStatus.SKIPPED,
                skip_reason=check.reason,
                completed_at=utcnow(),
            )

        attempted_at = utcnow()
        try:
            gateway = self.registry.require_provider(ref.provider)
            result = await gateway.merge(ref, options.strategy, options.delete_branch)
        except ProviderError as exc:
            return self._failed(item, exc.message, attempted_at=attempted_at, kind=exc.kind)
        except Exception as exc:
            logger.error("Provider merge call crashed", data={"ref": str(ref)}, exc_info=True)
            return self._failed(item, f"Unexpected provider error: {exc}", attempted_at=attempted_at)
        finally:
            pacer.record_attempt()

        if not result.merged:
            return self._failed(item, result.message or "Merge not completed", attempted_at=attempted_at)

        merged_at = utcnow()
        if item.pull_request_id:
            await self._correct_cache(item, PullRequestState.MERGED, at=merged_at)
        logger.info("Merged pull request", data={"ref": str(ref), "sha": result.sha})
        return ItemOutcome(
            item_id=item.item_id,
            status=ItemStatus.SUCCESS,
            merge_commit_id=result.sha,
            merged_at=merged_at,
            attempted_at=attempted_at,
            completed_at=merged_at,
        )

    def _failed(
        self,
        item: WorkItem,
        message: str,
        *,
        attempted_at: Optional[datetime] = None,
        kind: Optional[str] = None,
    ) -> ItemOutcome:
        logger.warning("Pull request merge failed", data={"ref": str(item.ref), "error": message, "kind": kind})
        return ItemOutcome(
            item_id=item.item_id,
            status=ItemStatus.FAILED,
            error_message=message,
            attempted_at=attempted_at,
            completed_at=utcnow(),
        )

    async def _correct_cache(
        self, item: WorkItem, state: PullRequestState, at: Optional[datetime] = None
    ) -> None:
        try:
            await self.store.update_pull_request_state(item.pull_request_id, state, at=at or utcnow())
        except PersistenceFault as exc:
            logger.warning(
                "Could not update cached PR state",
                data={"ref": str(item.ref), "state": state.value, "error": exc.message},
            )

    async def _persist_outcome(
        self, operation_id: str, outcome: ItemOutcome, unflushed: List[Dict[str, Any]]
    ) -> None:
        fields = outcome.to_fields()
        item_id = fields.pop("item_id")
        try:
            await self.store.record_item_outcome(operation_id, item_id, **fields)
        except PersistenceFault as exc:
            logger.error(
                "Could not record item outcome; will retry at finalize",
                data={"item_id": item_id, "status": outcome.status.value, "error": exc.message},
            )
            unflushed.append(outcome.to_fields())

    async def _fail_operation(
        self, operation_id: str, message: str, unflushed: Optional[List[Dict[str, Any]]] = None
    ) -> None:
        """Terminal Failed write. Items that never finished fail with the same message."""
        try:
            await self.store.fail_operation(
                operation_id, message, completed_at=utcnow(), unflushed=unflushed
            )
        except PersistenceFault as exc:
            logger.error(
                "Could not mark merge operation failed",
                data={"operation_id": operation_id, "error": exc.message},
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def running_operations(self) -> List[str]:
        return list(self._tasks)

    async def drain(self) -> None:
        """Wait until every scheduled operation has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def recover_orphans(self) -> int:
        """Fail operations a previous process left in progress. Returns how many."""
        recovered = 0
        for operation in await self.store.list_in_progress():
            if operation.id in self._tasks:
                continue
            await self._fail_operation(operation.id, INTERRUPTED_MESSAGE)
            recovered += 1
        if recovered:
            logger.warning("Recovered orphaned merge operations", data={"count": recovered})
        return recovered

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting work, wait up to `timeout` for running operations, then cancel the rest."""
        self._closing = True
        tasks = list(self._tasks.values())
        if not tasks:
            return
        timeout = self.settings.shutdown_grace_seconds if timeout is None else timeout
        _done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled running merge operations", data={"count": len(still_running)})
            await asyncio.gather(*still_running, return_exceptions=True)
