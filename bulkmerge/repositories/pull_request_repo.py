"""Pull request cache repository."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..db.models import PullRequest, Repository
from ..db.types import GUID
from ..domain import PullRequestState


@runtime_checkable
class PullRequestRepository(Protocol):
    async def get_by_id(self, id: str) -> PullRequest | None: ...
    async def get_many(self, ids: Iterable[str]) -> dict[str, PullRequest]: ...
    async def update_state(self, id: str, state: PullRequestState, at: datetime | None = None) -> PullRequest | None: ...


class SQLAlchemyPullRequestRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, id: str) -> PullRequest | None:
        result = await self._session.execute(
            select(PullRequest)
            .options(selectinload(PullRequest.repository))
            .where(PullRequest.id == id)
        )
        return result.scalar_one_or_none()

    async def get_many(self, ids: Iterable[str]) -> dict[str, PullRequest]:
        """Load pull requests with their repositories, keyed by id. Unknown ids are absent."""
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return {}
        result = await self._session.execute(
            select(PullRequest)
            .options(selectinload(PullRequest.repository))
            .where(PullRequest.id.in_(wanted))
        )
        return {pr.id: pr for pr in result.scalars().all()}

    async def update_state(
        self, id: str, state: PullRequestState, at: datetime | None = None
    ) -> PullRequest | None:
        pr = await self._session.get(PullRequest, id)
        if not pr:
            return None
        pr.state = state
        if state is PullRequestState.MERGED:
            pr.merged_at = pr.merged_at or at
            pr.closed_at = pr.closed_at or at
        elif state is PullRequestState.CLOSED:
            pr.closed_at = pr.closed_at or at
        await self._session.flush()
        return pr

    async def create_repository(
        self, owner_id: str, provider: str, owner: str, name: str
    ) -> Repository:
        repo = Repository(
            id=GUID.new(),
            owner_id=owner_id,
            provider=provider,
            owner=owner,
            name=name,
            full_name=f"{owner}/{name}",
        )
        self._session.add(repo)
        await self._session.flush()
        return repo

    async def create(
        self,
        repository: Repository,
        number: int,
        title: str = "",
        state: PullRequestState = PullRequestState.OPEN,
    ) -> PullRequest:
        pr = PullRequest(
            id=GUID.new(),
            repository_id=repository.id,
            number=number,
            title=title,
            state=state,
        )
        pr.repository = repository
        self._session.add(pr)
        await self._session.flush()
        return pr
