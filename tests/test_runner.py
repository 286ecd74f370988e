"""Operation runner: submission validation, execution, finalization."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from bulkmerge.core.exceptions import BulkMergeError, PersistenceFault, ProviderError, SubmissionRejected
from bulkmerge.core.time import utcnow
from bulkmerge.db.models import MergeOperation, MergeOperationItem, PullRequest
from bulkmerge.domain import ItemStatus, MergeStrategy, OperationStatus, PullRequestState
from bulkmerge.providers import MockProvider, ProviderRegistry
from bulkmerge.repositories import SQLAlchemyOperationRepository, SQLAlchemyPullRequestRepository
from bulkmerge.services import OperationRunner

from .conftest import OTHER_OWNER, OWNER

pytestmark = pytest.mark.asyncio


async def _run(runner, ids, **options):
    operation = await runner.submit(OWNER, ids, **options)
    await runner.drain()
    stored = await runner.store.get_operation(operation.id, with_items=True)
    return stored


async def _row_counts(session_factory):
    async with session_factory() as session:
        ops = (await session.execute(select(func.count()).select_from(MergeOperation))).scalar_one()
        items = (await session.execute(select(func.count()).select_from(MergeOperationItem))).scalar_one()
    return ops, items


def _assert_counts_consistent(operation):
    assert operation.status.is_terminal
    assert operation.success_count + operation.failed_count + operation.skipped_count == operation.total_count
    assert len(operation.items) == operation.total_count
    assert all(item.status.is_terminal for item in operation.items)


class TestSubmitValidation:
    async def test_empty_batch_rejected(self, runner, session_factory):
        with pytest.raises(SubmissionRejected) as exc_info:
            await runner.submit(OWNER, [])
        assert exc_info.value.reason == "empty"
        assert exc_info.value.status_code == 400
        assert await _row_counts(session_factory) == (0, 0)

    async def test_too_many_rejected_without_rows(self, runner, seed, session_factory):
        prs = [await seed.pr("api", n) for n in range(1, 52)]
        with pytest.raises(SubmissionRejected) as exc_info:
            await runner.submit(OWNER, [pr.id for pr in prs])
        err = exc_info.value
        assert err.reason == "too_many"
        assert err.details["max"] == 50
        assert await _row_counts(session_factory) == (0, 0)

    async def test_too_many_counts_raw_length_before_dedup(self, runner, seed):
        pr = await seed.pr("api", 1)
        with pytest.raises(SubmissionRejected) as exc_info:
            await runner.submit(OWNER, [pr.id] * 51)
        assert exc_info.value.reason == "too_many"

    async def test_unknown_pull_request_rejected(self, runner, seed, session_factory):
        pr = await seed.pr("api", 1)
        with pytest.raises(SubmissionRejected) as exc_info:
            await runner.submit(OWNER, [pr.id, "does-not-exist"])
        assert exc_info.value.reason == "not_found"
        assert exc_info.value.status_code == 404
        assert exc_info.value.details["pull_request_id"] == "does-not-exist"
        assert await _row_counts(session_factory) == (0, 0)

    async def test_foreign_pull_request_rejected(self, runner, seed, session_factory):
        mine = await seed.pr("api", 1)
        theirs = await seed.pr("web", 7, owner_id=OTHER_OWNER)
        with pytest.raises(SubmissionRejected) as exc_info:
            await runner.submit(OWNER, [mine.id, theirs.id])
        assert exc_info.value.reason == "not_owned"
        assert exc_info.value.status_code == 403
        assert await _row_counts(session_factory) == (0, 0)

    async def test_duplicates_collapse_keeping_first_order(self, runner, seed):
        a = await seed.pr("api", 1)
        b = await seed.pr("api", 2)
        operation = await runner.submit(OWNER, [b.id, a.id, b.id, a.id])
        await runner.drain()
        items = await runner.store.get_items(operation.id)
        assert operation.total_count == 2
        assert [item.pull_request_id for item in items] == [b.id, a.id]
        assert [item.position for item in items] == [0, 1]

    async def test_submit_returns_in_progress_with_pending_items(self, runner, seed, mock_provider):
        pr = await seed.pr("api", 1)
        gate = asyncio.Event()
        original_fetch = mock_provider.fetch_state

        async def slow_fetch(ref):
            await gate.wait()
            return await original_fetch(ref)

        mock_provider.fetch_state = slow_fetch
        operation = await runner.submit(OWNER, [pr.id])
        assert operation.status is OperationStatus.IN_PROGRESS
        assert operation.success_count == operation.failed_count == operation.skipped_count == 0
        items = await runner.store.get_items(operation.id)
        assert [item.status for item in items] == [ItemStatus.PENDING]
        gate.set()
        await runner.drain()


class TestEffectiveOptions:
    async def test_request_values_win(self, runner, seed, mock_provider):
        pr = await seed.pr("api", 1)
        operation = await _run(runner, [pr.id], strategy="rebase", delete_branch=True)
        assert operation.strategy == "rebase"
        assert operation.delete_branch is True
        call = mock_provider.calls_for("merge")[0]
        assert call.strategy is MergeStrategy.REBASE
        assert call.delete_branch is True

    async def test_saved_user_defaults_used_when_omitted(self, runner, seed, mock_provider):
        await seed.user_defaults(default_merge_strategy="merge", delete_branches_default=True)
        pr = await seed.pr("api", 1)
        operation = await _run(runner, [pr.id])
        assert operation.strategy == "merge"
        assert operation.delete_branch is True

    async def test_unknown_strategy_falls_back_to_default(self, runner, seed):
        pr = await seed.pr("api", 1)
        operation = await _run(runner, [pr.id], strategy="octopus")
        assert operation.strategy == "squash"
        assert operation.status is OperationStatus.COMPLETED


class TestScenarios:
    async def test_all_mergeable_across_two_repos(self, runner, seed, session_factory):
        prs = [await seed.pr("api", 1), await seed.pr("api", 2), await seed.pr("web", 3)]
        operation = await _run(runner, [pr.id for pr in prs])

        assert operation.status is OperationStatus.COMPLETED
        assert (operation.success_count, operation.failed_count, operation.skipped_count) == (3, 0, 0)
        _assert_counts_consistent(operation)
        assert operation.completed_at is not None
        for item in operation.items:
            assert item.merge_commit_id
            assert item.merged_at is not None
            assert item.error_message is None

        async with session_factory() as session:
            states = (await session.execute(select(PullRequest.state))).scalars().all()
        assert set(states) == {PullRequestState.MERGED}

    async def test_externally_merged_pr_is_skipped(self, runner, seed, mock_provider, session_factory):
        prs = [await seed.pr("api", 1), await seed.pr("api", 2), await seed.pr("web", 3)]
        mock_provider.set_state(prs[1].ref, PullRequestState.MERGED)

        operation = await _run(runner, [pr.id for pr in prs])

        assert (operation.success_count, operation.failed_count, operation.skipped_count) == (2, 0, 1)
        _assert_counts_consistent(operation)
        skipped = operation.items[1]
        assert skipped.status is ItemStatus.SKIPPED
        assert skipped.skip_reason == "PR is not open (merged)"
        assert skipped.error_message is None
        assert skipped.merge_commit_id is None
        assert [c.ref for c in mock_provider.calls_for("merge")] == [prs[0].ref, prs[2].ref]

        async with session_factory() as session:
            cached = await session.get(PullRequest, prs[1].id)
        assert cached.state is PullRequestState.MERGED

    async def test_resubmitting_processed_batch_only_skips(self, runner, seed):
        pr = await seed.pr("api", 1)
        first = await _run(runner, [pr.id])
        assert first.success_count == 1

        second = await _run(runner, [pr.id])
        assert second.status is OperationStatus.COMPLETED
        assert (second.success_count, second.failed_count, second.skipped_count) == (0, 0, 1)

    async def test_conflict_is_recorded_as_failure(self, runner, seed, mock_provider):
        prs = [await seed.pr("api", 1), await seed.pr("api", 2), await seed.pr("web", 3)]
        mock_provider.fail_merge(prs[0].ref, "Merge conflict in README.md")

        operation = await _run(runner, [pr.id for pr in prs])

        assert operation.status is OperationStatus.COMPLETED
        assert (operation.success_count, operation.failed_count, operation.skipped_count) == (2, 1, 0)
        failed = operation.items[0]
        assert failed.status is ItemStatus.FAILED
        assert "conflict" in failed.error_message.lower()
        assert failed.attempted_at is not None
        # The group continued after the failure
        assert operation.items[1].status is ItemStatus.SUCCESS

    async def test_provider_answering_without_merge_fails_item(self, runner, seed, mock_provider):
        pr = await seed.pr("api", 1)
        mock_provider.refuse_merge(pr.ref)
        operation = await _run(runner, [pr.id])
        assert operation.items[0].status is ItemStatus.FAILED
        assert operation.items[0].error_message == "Merge not completed"

    async def test_preflight_fetch_error_fails_item(self, runner, seed, mock_provider):
        pr = await seed.pr("api", 1)
        mock_provider.fail_fetch(pr.ref, "Timed out", kind=ProviderError.TIMEOUT)
        operation = await _run(runner, [pr.id])
        item = operation.items[0]
        assert item.status is ItemStatus.FAILED
        assert item.error_message == "Preflight check failed: Timed out"
        assert mock_provider.calls_for("merge") == []

    async def test_unconnected_provider_fails_item(self, runner, seed):
        pr = await seed.pr("infra", 4, provider="gitlab")
        operation = await _run(runner, [pr.id])
        assert operation.status is OperationStatus.COMPLETED
        assert operation.items[0].status is ItemStatus.FAILED
        assert "Provider not connected" in operation.items[0].error_message

    async def test_locally_closed_pr_is_skipped_and_cache_corrected(
        self, runner, seed, mock_provider, session_factory
    ):
        pr = await seed.pr("api", 1, state=PullRequestState.CLOSED)
        operation = await _run(runner, [pr.id])
        assert operation.items[0].status is ItemStatus.SKIPPED
        assert mock_provider.calls_for("merge") == []
        async with session_factory() as session:
            cached = await session.get(PullRequest, pr.id)
        assert cached.state is PullRequestState.OPEN


class TestPacing:
    async def test_same_repo_attempts_are_spaced_by_delay(self, runner, seed, mock_provider, clock):
        await seed.user_defaults(merge_delay_seconds=5)
        prs = [await seed.pr("api", 1), await seed.pr("api", 2)]
        await _run(runner, [pr.id for pr in prs])

        merges = mock_provider.calls_for("merge")
        assert [c.ref for c in merges] == [prs[0].ref, prs[1].ref]
        assert merges[1].at - merges[0].at >= 5
        assert clock.sleeps == [5]

    async def test_different_repos_do_not_wait_for_each_other(self, runner, seed, mock_provider, clock):
        await seed.user_defaults(merge_delay_seconds=5)
        prs = [await seed.pr("api", 1), await seed.pr("web", 2)]
        await _run(runner, [pr.id for pr in prs])

        merges = mock_provider.calls_for("merge")
        assert len(merges) == 2
        assert merges[0].at == merges[1].at
        assert clock.sleeps == []

    async def test_skip_does_not_trigger_delay(self, runner, seed, mock_provider, clock):
        await seed.user_defaults(merge_delay_seconds=5)
        prs = [await seed.pr("api", n) for n in (1, 2, 3)]
        mock_provider.set_state(prs[0].ref, PullRequestState.CLOSED)

        operation = await _run(runner, [pr.id for pr in prs])

        assert [i.status for i in operation.items] == [ItemStatus.SKIPPED, ItemStatus.SUCCESS, ItemStatus.SUCCESS]
        assert clock.sleeps == [5]

    async def test_failed_attempt_still_triggers_delay(self, runner, seed, mock_provider, clock):
        await seed.user_defaults(merge_delay_seconds=3)
        prs = [await seed.pr("api", 1), await seed.pr("api", 2)]
        mock_provider.fail_merge(prs[0].ref, "Merge conflict")
        await _run(runner, [pr.id for pr in prs])
        assert clock.sleeps == [3]

    async def test_group_concurrency_is_bounded(self, session_factory, settings, seed):
        active = 0
        peak = 0

        class TrackingProvider(MockProvider):
            async def merge(self, ref, strategy, delete_branch):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                try:
                    await asyncio.sleep(0.01)
                    return await super().merge(ref, strategy, delete_branch)
                finally:
                    active -= 1

        bounded = settings.model_copy(update={"max_concurrent_groups": 1})
        registry = ProviderRegistry(bounded, providers={"github": TrackingProvider()})
        runner = OperationRunner(session_factory, registry, bounded)
        prs = [await seed.pr(name, 1) for name in ("api", "web", "cli")]

        operation = await _run(runner, [pr.id for pr in prs])

        assert operation.success_count == 3
        assert peak == 1


class TestFaultsAndLifecycle:
    async def test_item_write_fault_is_reapplied_at_finalize(self, runner, seed, monkeypatch):
        prs = [await seed.pr("api", 1), await seed.pr("api", 2)]
        original = runner.store.record_item_outcome
        failures = []

        async def flaky(operation_id, item_id, status, **fields):
            if not failures:
                failures.append(item_id)
                raise PersistenceFault("database is locked", operation_id=operation_id)
            return await original(operation_id, item_id, status, **fields)

        monkeypatch.setattr(runner.store, "record_item_outcome", flaky)

        operation = await _run(runner, [pr.id for pr in prs])

        assert operation.status is OperationStatus.COMPLETED
        assert operation.success_count == 2
        _assert_counts_consistent(operation)

    async def test_load_fault_marks_operation_failed(self, runner, seed, monkeypatch):
        pr = await seed.pr("api", 1)

        async def broken(operation_id, with_items=False):
            raise PersistenceFault("no such table", operation_id=operation_id)

        monkeypatch.setattr(runner.store, "get_operation", broken)
        operation = await runner.submit(OWNER, [pr.id])
        await runner.drain()
        monkeypatch.undo()

        stored = await runner.store.get_operation(operation.id, with_items=True)
        assert stored.status is OperationStatus.FAILED
        assert stored.error_message == "no such table"
        assert stored.items[0].status is ItemStatus.FAILED
        assert stored.items[0].error_message == "no such table"
        _assert_counts_consistent(stored)
        assert stored.failed_count == 1

    async def test_terminal_items_never_rewind(self, runner, seed):
        pr = await seed.pr("api", 1)
        operation = await _run(runner, [pr.id])
        item = operation.items[0]

        rewritten = await runner.store.record_item_outcome(
            operation.id, item.id, ItemStatus.FAILED, completed_at=item.completed_at, error_message="late"
        )
        refinalized = await runner.store.finalize(
            operation.id, OperationStatus.FAILED, completed_at=item.completed_at
        )
        assert rewritten is False
        assert refinalized is False

        again = await runner.store.get_operation(operation.id, with_items=True)
        assert again.status is OperationStatus.COMPLETED
        assert again.items[0].status is ItemStatus.SUCCESS
        assert again.items[0].error_message is None

    async def test_shutdown_interrupts_running_operation(self, session_factory, settings, seed):
        gate = asyncio.Event()

        class HangingProvider(MockProvider):
            async def merge(self, ref, strategy, delete_branch):
                await gate.wait()
                return await super().merge(ref, strategy, delete_branch)

        registry = ProviderRegistry(settings, providers={"github": HangingProvider()})
        runner = OperationRunner(session_factory, registry, settings)
        prs = [await seed.pr("api", 1), await seed.pr("api", 2)]
        operation = await runner.submit(OWNER, [pr.id for pr in prs])
        for _ in range(100):
            if registry.get_provider("github").calls_for("merge"):
                break
            await asyncio.sleep(0.01)

        await runner.shutdown(timeout=0.05)

        stored = await runner.store.get_operation(operation.id, with_items=True)
        assert stored.status is OperationStatus.FAILED
        assert stored.error_message == "interrupted"
        assert [i.status for i in stored.items] == [ItemStatus.FAILED, ItemStatus.FAILED]
        assert [i.error_message for i in stored.items] == ["interrupted", "interrupted"]
        _assert_counts_consistent(stored)
        assert stored.failed_count == 2
        with pytest.raises(BulkMergeError):
            await runner.submit(OWNER, [prs[0].id])

    async def test_recover_orphans_fails_abandoned_operations(self, runner, seed, session_factory):
        pr = await seed.pr("api", 1)
        async with session_factory() as session:
            async with session.begin():
                loaded = await SQLAlchemyPullRequestRepository(session).get_by_id(pr.id)
                orphan = await SQLAlchemyOperationRepository(session).create(
                    owner_id=OWNER,
                    strategy=MergeStrategy.SQUASH,
                    delete_branch=False,
                    merge_delay_seconds=0,
                    pull_requests=[loaded],
                )

        assert await runner.recover_orphans() == 1
        stored = await runner.store.get_operation(orphan.id, with_items=True)
        assert stored.status is OperationStatus.FAILED
        assert stored.error_message == "interrupted"
        _assert_counts_consistent(stored)
        assert stored.failed_count == 1
        assert stored.items[0].error_message == "interrupted"
        assert await runner.recover_orphans() == 0

    async def test_recover_orphans_keeps_finished_items(self, runner, seed, session_factory):
        prs = [await seed.pr("api", 1), await seed.pr("api", 2)]
        async with session_factory() as session:
            async with session.begin():
                pr_repo = SQLAlchemyPullRequestRepository(session)
                orphan = await SQLAlchemyOperationRepository(session).create(
                    owner_id=OWNER,
                    strategy=MergeStrategy.SQUASH,
                    delete_branch=False,
                    merge_delay_seconds=0,
                    pull_requests=[await pr_repo.get_by_id(pr.id) for pr in prs],
                )
        items = await runner.store.get_items(orphan.id)
        await runner.store.record_item_outcome(
            orphan.id, items[0].id, ItemStatus.SUCCESS, completed_at=utcnow(), merge_commit_id="abc123"
        )

        assert await runner.recover_orphans() == 1
        stored = await runner.store.get_operation(orphan.id, with_items=True)
        _assert_counts_consistent(stored)
        assert (stored.success_count, stored.failed_count) == (1, 1)
        assert [i.status for i in stored.items] == [ItemStatus.SUCCESS, ItemStatus.FAILED]
        assert stored.items[0].error_message is None

    async def test_finalize_fault_is_retried(self, runner, seed, clock, monkeypatch):
        pr = await seed.pr("api", 1)
        original = runner.store.finalize
        calls = []

        async def flaky(operation_id, status, **fields):
            calls.append(status)
            if len(calls) == 1:
                raise PersistenceFault("database is locked", operation_id=operation_id)
            return await original(operation_id, status, **fields)

        monkeypatch.setattr(runner.store, "finalize", flaky)
        operation = await _run(runner, [pr.id])

        assert calls == [OperationStatus.COMPLETED, OperationStatus.COMPLETED]
        assert runner.settings.finalize_retry_backoff_seconds in clock.sleeps
        assert operation.status is OperationStatus.COMPLETED
        assert operation.success_count == 1
        _assert_counts_consistent(operation)

    async def test_persistent_finalize_fault_marks_operation_failed(self, runner, seed, clock, monkeypatch):
        prs = [await seed.pr("api", 1), await seed.pr("web", 2)]
        calls = []

        async def broken(operation_id, status, **fields):
            calls.append(status)
            raise PersistenceFault("database is locked", operation_id=operation_id)

        monkeypatch.setattr(runner.store, "finalize", broken)
        operation = await _run(runner, [pr.id for pr in prs])

        assert len(calls) == runner.settings.finalize_attempts
        assert operation.status is OperationStatus.FAILED
        assert operation.error_message == "Could not write terminal status: database is locked"
        assert operation.success_count == 2
        assert [i.status for i in operation.items] == [ItemStatus.SUCCESS, ItemStatus.SUCCESS]
        _assert_counts_consistent(operation)
