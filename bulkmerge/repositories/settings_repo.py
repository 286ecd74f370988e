"""Per-user merge defaults repository."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.settings import Settings
from ..db.models import UserSettings
from ..domain import MergeStrategy


@dataclass(frozen=True)
class MergeDefaults:
    strategy: MergeStrategy
    delete_branch: bool
    merge_delay_seconds: int


@runtime_checkable
class UserSettingsRepository(Protocol):
    async def get(self, user_id: str) -> UserSettings | None: ...
    async def upsert(self, user_id: str, **kwargs) -> UserSettings: ...
    async def merge_defaults(self, user_id: str) -> MergeDefaults: ...


class SQLAlchemyUserSettingsRepository:
    def __init__(self, session: AsyncSession, settings: Settings):
        self._session = session
        self._settings = settings

    async def get(self, user_id: str) -> UserSettings | None:
        return await self._session.get(UserSettings, user_id)

    async def upsert(self, user_id: str, **kwargs) -> UserSettings:
        row = await self.get(user_id)
        if row is None:
            row = UserSettings(user_id=user_id)
            self._session.add(row)
        for key, value in kwargs.items():
            if hasattr(row, key):
                setattr(row, key, value)
        await self._session.flush()
        return row

    async def merge_defaults(self, user_id: str) -> MergeDefaults:
        """Saved defaults for `user_id`, falling back to service-wide defaults."""
        row = await self.get(user_id)
        fallback = MergeStrategy(self._settings.default_merge_strategy)
        if row is None:
            return MergeDefaults(
                strategy=fallback,
                delete_branch=self._settings.default_delete_branch,
                merge_delay_seconds=self._settings.default_merge_delay_seconds,
            )
        return MergeDefaults(
            strategy=MergeStrategy.parse(row.default_merge_strategy) or fallback,
            delete_branch=bool(row.delete_branches_default),
            merge_delay_seconds=max(0, row.merge_delay_seconds or 0),
        )
