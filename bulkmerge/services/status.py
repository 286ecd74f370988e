"""Read-side views of merge operations."""

from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import OperationNotFound, PersistenceFault
from ..core.settings import Settings
from ..repositories import SQLAlchemyOperationRepository
from ..schemas import OperationPage, OperationSnapshot, OperationSummary


class StatusReporter:
    """Snapshots of operations, scoped to their owner.

    Never writes. Each call reads the latest committed state in its own
    session, so it is safe to poll while the runner is still executing.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self._sf = session_factory
        self.settings = settings

    async def get(self, owner_id: str, operation_id: str) -> OperationSnapshot:
        """Full snapshot; raises OperationNotFound for unknown or foreign ids."""
        try:
            async with self._sf() as session:
                operation = await SQLAlchemyOperationRepository(session).get_for_owner(operation_id, owner_id)
                if operation is None:
                    raise OperationNotFound(operation_id)
                return OperationSnapshot.from_operation(operation)
        except SQLAlchemyError as exc:
            raise PersistenceFault(f"Failed to load operation: {exc}", operation_id=operation_id) from exc

    async def list(self, owner_id: str, page: int = 1, per_page: int | None = None) -> OperationPage:
        """Newest first. `per_page` is clamped to the configured maximum."""
        page = max(1, page)
        per_page = per_page or self.settings.operations_page_size
        per_page = max(1, min(per_page, self.settings.operations_max_page_size))
        try:
            async with self._sf() as session:
                repo = SQLAlchemyOperationRepository(session)
                total = await repo.count_for_owner(owner_id)
                operations = await repo.list_for_owner(owner_id, limit=per_page, offset=(page - 1) * per_page)
                items = [OperationSummary.from_operation(op) for op in operations]
        except SQLAlchemyError as exc:
            raise PersistenceFault(f"Failed to list operations: {exc}") from exc
        return OperationPage(items=items, page=page, per_page=per_page, total=total)
