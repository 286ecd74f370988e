"""Pytest configuration and fixtures for bulk merge tests.

Every test gets its own file-backed SQLite database under `tmp_path`, so
concurrent group workers use separate connections exactly as they do in
production.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from bulkmerge.core.settings import Settings
from bulkmerge.db import create_all, make_engine, make_session_factory
from bulkmerge.db.models import PullRequest, Repository
from bulkmerge.domain import PullRequestState
from bulkmerge.providers import MockProvider, ProviderRegistry
from bulkmerge.repositories import SQLAlchemyPullRequestRepository, SQLAlchemyUserSettingsRepository
from bulkmerge.services import OperationRunner

OWNER = "user-1"
OTHER_OWNER = "user-2"


def pytest_configure(config):
    """Run the suite with ENVIRONMENT=test and no provider credentials."""
    os.environ.setdefault("ENVIRONMENT", "test")
    config.addinivalue_line("markers", "slow: Slow-running tests")


class FakeClock:
    """Monotonic clock that only moves when the fake sleep is awaited."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@dataclass
class Seeder:
    """Creates repositories and cached pull requests for a test."""

    session_factory: object
    settings: Settings = field(default_factory=Settings)
    repositories: Dict[str, Repository] = field(default_factory=dict)

    async def repo(self, name: str, owner_id: str = OWNER, provider: str = "github", owner: str = "acme") -> Repository:
        key = f"{owner_id}:{provider}:{owner}/{name}"
        if key not in self.repositories:
            async with self.session_factory() as session:
                async with session.begin():
                    repo = await SQLAlchemyPullRequestRepository(session).create_repository(
                        owner_id=owner_id, provider=provider, owner=owner, name=name
                    )
            self.repositories[key] = repo
        return self.repositories[key]

    async def pr(
        self,
        repo_name: str,
        number: int,
        *,
        owner_id: str = OWNER,
        provider: str = "github",
        state: PullRequestState = PullRequestState.OPEN,
        title: Optional[str] = None,
    ) -> PullRequest:
        repo_id = (await self.repo(repo_name, owner_id=owner_id, provider=provider)).id
        async with self.session_factory() as session:
            async with session.begin():
                repo = await session.get(Repository, repo_id)
                return await SQLAlchemyPullRequestRepository(session).create(
                    repo, number, title=title or f"Change #{number}", state=state
                )

    async def user_defaults(self, user_id: str = OWNER, **fields) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await SQLAlchemyUserSettingsRepository(session, self.settings).upsert(user_id, **fields)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'bulkmerge.db'}",
        auto_create_tables=True,
        providers_enabled="github,gitlab",
        max_concurrent_groups=4,
        max_concurrent_operations=4,
        shutdown_grace_seconds=5.0,
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = make_engine(settings.database_url)
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def seed(session_factory, settings) -> Seeder:
    return Seeder(session_factory, settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_provider(clock) -> MockProvider:
    return MockProvider(clock=clock)


@pytest.fixture
def registry(settings, mock_provider) -> ProviderRegistry:
    # gitlab is enabled in settings but only github is connected here
    return ProviderRegistry(settings, providers={"github": mock_provider})


@pytest_asyncio.fixture
async def runner(session_factory, registry, settings, clock):
    runner = OperationRunner(session_factory, registry, settings, clock=clock, sleep=clock.sleep)
    yield runner
    await runner.shutdown(timeout=5)


@pytest_asyncio.fixture
async def app(settings, registry):
    from bulkmerge.app import create_app

    app = create_app(settings=settings, registry=registry)
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={"X-User-ID": OWNER}) as c:
        yield c


@pytest_asyncio.fixture
async def app_seed(app, settings) -> Seeder:
    """Seeder bound to the application's own database."""
    return Seeder(app.state.session_factory, settings)
