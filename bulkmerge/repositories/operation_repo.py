"""Merge operation + item repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence, runtime_checkable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..db.models import MergeOperation, MergeOperationItem, PullRequest
from ..db.types import GUID
from ..domain import ItemStatus, MergeStrategy, OperationStatus


@runtime_checkable
class OperationRepository(Protocol):
    async def create(
        self,
        owner_id: str,
        strategy: MergeStrategy,
        delete_branch: bool,
        merge_delay_seconds: int,
        pull_requests: Sequence[PullRequest],
    ) -> MergeOperation: ...
    async def get_by_id(self, id: str, with_items: bool = False) -> MergeOperation | None: ...
    async def get_for_owner(self, id: str, owner_id: str) -> MergeOperation | None: ...
    async def list_for_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> list[MergeOperation]: ...
    async def count_for_owner(self, owner_id: str) -> int: ...
    async def list_items(self, operation_id: str) -> list[MergeOperationItem]: ...
    async def update_item(self, item_id: str, **fields: Any) -> bool: ...
    async def fail_pending_items(self, operation_id: str, message: str, completed_at: datetime) -> int: ...
    async def count_items_by_status(self, operation_id: str) -> dict[ItemStatus, int]: ...
    async def finalize(self, id: str, status: OperationStatus, **fields: Any) -> bool: ...


class SQLAlchemyOperationRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        owner_id: str,
        strategy: MergeStrategy,
        delete_branch: bool,
        merge_delay_seconds: int,
        pull_requests: Sequence[PullRequest],
    ) -> MergeOperation:
        """Add an in-progress operation with one pending item per pull request.

        Items keep the order of `pull_requests`. Nothing is committed here;
        the caller's transaction makes the operation and items one unit.
        """
        operation = MergeOperation(
            id=GUID.new(),
            owner_id=owner_id,
            status=OperationStatus.IN_PROGRESS,
            strategy=strategy.value,
            delete_branch=delete_branch,
            merge_delay_seconds=merge_delay_seconds,
            total_count=len(pull_requests),
        )
        self._session.add(operation)
        for position, pr in enumerate(pull_requests):
            repo = pr.repository
            self._session.add(
                MergeOperationItem(
                    id=GUID.new(),
                    operation_id=operation.id,
                    position=position,
                    pull_request_id=pr.id,
                    repository_id=repo.id,
                    provider=repo.provider,
                    repository_owner=repo.owner,
                    repository_name=repo.name,
                    pr_number=pr.number,
                    pr_title=pr.title or "",
                    status=ItemStatus.PENDING,
                )
            )
        await self._session.flush()
        return operation

    async def get_by_id(self, id: str, with_items: bool = False) -> MergeOperation | None:
        stmt = select(MergeOperation).where(MergeOperation.id == id)
        if with_items:
            stmt = stmt.options(selectinload(MergeOperation.items))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_owner(self, id: str, owner_id: str) -> MergeOperation | None:
        result = await self._session.execute(
            select(MergeOperation)
            .options(selectinload(MergeOperation.items))
            .where(MergeOperation.id == id, MergeOperation.owner_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def list_for_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> list[MergeOperation]:
        result = await self._session.execute(
            select(MergeOperation)
            .options(selectinload(MergeOperation.items))
            .where(MergeOperation.owner_id == owner_id)
            .order_by(MergeOperation.created_at.desc(), MergeOperation.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_for_owner(self, owner_id: str) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(MergeOperation).where(MergeOperation.owner_id == owner_id)
        )
        return result.scalar_one()

    async def list_items(self, operation_id: str) -> list[MergeOperationItem]:
        result = await self._session.execute(
            select(MergeOperationItem)
            .where(MergeOperationItem.operation_id == operation_id)
            .order_by(MergeOperationItem.position)
        )
        return list(result.scalars().all())

    async def update_item(self, item_id: str, **fields: Any) -> bool:
        """Apply `fields` to a still-pending item.

        Terminal items are never rewritten, so a late or repeated write cannot
        move an item backwards.
        """
        result = await self._session.execute(
            update(MergeOperationItem)
            .where(
                MergeOperationItem.id == item_id,
                MergeOperationItem.status == ItemStatus.PENDING,
            )
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def fail_pending_items(self, operation_id: str, message: str, completed_at: datetime) -> int:
        """Mark every still-pending item of an operation failed. Returns how many."""
        result = await self._session.execute(
            update(MergeOperationItem)
            .where(
                MergeOperationItem.operation_id == operation_id,
                MergeOperationItem.status == ItemStatus.PENDING,
            )
            .values(status=ItemStatus.FAILED, error_message=message, completed_at=completed_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def count_items_by_status(self, operation_id: str) -> dict[ItemStatus, int]:
        result = await self._session.execute(
            select(MergeOperationItem.status, func.count())
            .where(MergeOperationItem.operation_id == operation_id)
            .group_by(MergeOperationItem.status)
        )
        return {status: count for status, count in result.all()}

    async def finalize(
        self,
        id: str,
        status: OperationStatus,
        success_count: int = 0,
        failed_count: int = 0,
        skipped_count: int = 0,
        completed_at: datetime | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Write the terminal status once. Returns False if already terminal."""
        result = await self._session.execute(
            update(MergeOperation)
            .where(
                MergeOperation.id == id,
                MergeOperation.status == OperationStatus.IN_PROGRESS,
            )
            .values(
                status=status,
                success_count=success_count,
                failed_count=failed_count,
                skipped_count=skipped_count,
                completed_at=completed_at,
                error_message=error_message,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def list_in_progress(self) -> list[MergeOperation]:
        result = await self._session.execute(
            select(MergeOperation).where(MergeOperation.status == OperationStatus.IN_PROGRESS)
        )
        return list(result.scalars().all())
