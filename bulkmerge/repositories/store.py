"""Session-per-call façade over the repositories for background execution."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import PersistenceFault
from ..db.models import MergeOperation, MergeOperationItem, PullRequest
from ..domain import ItemStatus, OperationStatus, PullRequestState
from .operation_repo import SQLAlchemyOperationRepository
from .pull_request_repo import SQLAlchemyPullRequestRepository


class OperationStore:
    """Durable operation/item state, keyed by operation id.

    Every method runs in its own short transaction so a background worker
    never holds a connection across provider calls or pacing sleeps.
    SQLAlchemy failures surface as `PersistenceFault`.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory

    @asynccontextmanager
    async def _transaction(self, what: str, operation_id: str | None = None) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sf() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise PersistenceFault(f"Failed to {what}: {exc}", operation_id=operation_id) from exc

    async def get_operation(self, operation_id: str, with_items: bool = False) -> MergeOperation | None:
        async with self._transaction("load operation", operation_id) as session:
            return await SQLAlchemyOperationRepository(session).get_by_id(operation_id, with_items=with_items)

    async def get_items(self, operation_id: str) -> list[MergeOperationItem]:
        async with self._transaction("load items", operation_id) as session:
            return await SQLAlchemyOperationRepository(session).list_items(operation_id)

    async def record_item_outcome(
        self,
        operation_id: str,
        item_id: str,
        status: ItemStatus,
        *,
        completed_at: datetime,
        error_message: str | None = None,
        skip_reason: str | None = None,
        merge_commit_id: str | None = None,
        merged_at: datetime | None = None,
        attempted_at: datetime | None = None,
    ) -> bool:
        fields: dict[str, Any] = {
            "status": status,
            "error_message": error_message,
            "skip_reason": skip_reason,
            "merge_commit_id": merge_commit_id,
            "merged_at": merged_at,
            "completed_at": completed_at,
        }
        if attempted_at is not None:
            fields["attempted_at"] = attempted_at
        async with self._transaction("record item outcome", operation_id) as session:
            return await SQLAlchemyOperationRepository(session).update_item(item_id, **fields)

    async def update_pull_request_state(
        self, pull_request_id: str, state: PullRequestState, at: datetime
    ) -> None:
        async with self._transaction("update pull request cache") as session:
            await SQLAlchemyPullRequestRepository(session).update_state(pull_request_id, state, at=at)

    async def finalize(
        self,
        operation_id: str,
        status: OperationStatus,
        *,
        completed_at: datetime,
        success_count: int = 0,
        failed_count: int = 0,
        skipped_count: int = 0,
        error_message: str | None = None,
        unflushed: list[dict[str, Any]] | None = None,
    ) -> bool:
        """Write the terminal status, re-applying any item outcomes that failed to persist earlier."""
        async with self._transaction("finalize operation", operation_id) as session:
            repo = SQLAlchemyOperationRepository(session)
            for pending in unflushed or ():
                fields = dict(pending)
                item_id = fields.pop("item_id")
                await repo.update_item(item_id, **fields)
            return await repo.finalize(
                operation_id,
                status,
                success_count=success_count,
                failed_count=failed_count,
                skipped_count=skipped_count,
                completed_at=completed_at,
                error_message=error_message,
            )

    async def fail_operation(
        self,
        operation_id: str,
        message: str,
        *,
        completed_at: datetime,
        unflushed: list[dict[str, Any]] | None = None,
    ) -> bool:
        """Terminal Failed write: unfinished items fail with `message`, counts come from the stored items.

        Returns False if the operation is unknown or already terminal.
        """
        async with self._transaction("fail operation", operation_id) as session:
            repo = SQLAlchemyOperationRepository(session)
            operation = await repo.get_by_id(operation_id)
            if operation is None or operation.status.is_terminal:
                return False
            for pending in unflushed or ():
                fields = dict(pending)
                item_id = fields.pop("item_id")
                await repo.update_item(item_id, **fields)
            await repo.fail_pending_items(operation_id, message, completed_at)
            counts = await repo.count_items_by_status(operation_id)
            return await repo.finalize(
                operation_id,
                OperationStatus.FAILED,
                success_count=counts.get(ItemStatus.SUCCESS, 0),
                failed_count=counts.get(ItemStatus.FAILED, 0),
                skipped_count=counts.get(ItemStatus.SKIPPED, 0),
                completed_at=completed_at,
                error_message=message,
            )

    async def list_in_progress(self) -> list[MergeOperation]:
        async with self._transaction("list in-progress operations") as session:
            return await SQLAlchemyOperationRepository(session).list_in_progress()

    async def get_pull_request_state(self, pull_request_id: str | None) -> PullRequestState | None:
        """Current cached state of a pull request, or None if the row is gone."""
        if pull_request_id is None:
            return None
        async with self._transaction("load pull request") as session:
            pr = await session.get(PullRequest, pull_request_id)
            return pr.state if pr else None
