"""Tests for the sync scheduler: periodic sweep, backoff skipping and triggers."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta

import httpx
from sqlalchemy import select

from fitsync.integrations.base import ActivityPage
from fitsync.integrations.errors import ProviderUnavailable
from fitsync.integrations.locks import CredentialLocks
from fitsync.integrations.oauth import TokenLifecycleManager
from fitsync.integrations.orchestrator import SyncOrchestrator
from fitsync.integrations.registry import build_registry
from fitsync.integrations.scheduler import SyncScheduler
from fitsync.models.credential import IntegrationCredential
from fitsync.models.sync_run import SyncRun, SyncStatus
from fitsync.models.user import User
from tests.conftest import ScriptedAdapter, create_credential, make_activity, make_settings, test_session

NOW = datetime(2024, 6, 10, 12, 0)


class CountingOrchestrator:
    """Stands in for the orchestrator and tracks how many passes overlap."""

    def __init__(self) -> None:
        self.locks = CredentialLocks()
        self.calls: list[int] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def run_sync(self, credential_id, trigger, object_ids=()):
        self.calls.append(credential_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return None


def _scheduler(adapter: ScriptedAdapter, **settings_overrides) -> SyncScheduler:
    settings = make_settings(**settings_overrides)
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
    registry = build_registry(settings, transport=transport)
    registry.register(replace(registry.get("strava"), adapter=adapter))
    tokens = TokenLifecycleManager(registry, settings, transport=transport, clock=lambda: NOW)
    orchestrator = SyncOrchestrator(registry, tokens, test_session, settings, clock=lambda: NOW)
    return SyncScheduler(orchestrator, test_session, settings, clock=lambda: NOW)


async def _runs() -> list[SyncRun]:
    async with test_session() as session:
        return list((await session.execute(select(SyncRun).order_by(SyncRun.id))).scalars().all())


class TestSweep:
    async def test_sweep_syncs_due_credentials_only(self, user: User) -> None:
        due = await create_credential()
        backing_off = await create_credential(
            provider="strava", user_id=2, external_user_id="43", next_sync_after=NOW + timedelta(minutes=5)
        )
        await create_credential(provider="strava", user_id=3, external_user_id="44", is_active=False)
        adapter = ScriptedAdapter(
            script={None: ActivityPage(records=[make_activity("a")], next_cursor="c", has_more=False)}
        )

        summary = await _scheduler(adapter).sweep()

        assert summary.considered == 2
        assert summary.deferred == 1
        assert summary.statuses == {SyncStatus.SUCCEEDED.value: 1}
        runs = await _runs()
        assert [r.credential_id for r in runs] == [due.id]
        assert runs[0].trigger == "periodic"
        assert backing_off.id not in [r.credential_id for r in runs]

    async def test_elapsed_backoff_is_due_again(self, user: User) -> None:
        await create_credential(consecutive_failures=2, next_sync_after=NOW - timedelta(minutes=1))
        summary = await _scheduler(ScriptedAdapter()).sweep()
        assert summary.deferred == 0
        assert summary.statuses == {SyncStatus.SUCCEEDED.value: 1}

    async def test_sweep_bounds_concurrency(self, user: User) -> None:
        for i in range(4):
            await create_credential(user_id=i + 1, external_user_id=str(100 + i))
        orchestrator = CountingOrchestrator()
        settings = make_settings(max_concurrent_syncs=2)
        scheduler = SyncScheduler(orchestrator, test_session, settings, clock=lambda: NOW)

        summary = await scheduler.sweep()

        assert len(orchestrator.calls) == 4
        assert orchestrator.max_in_flight == 2
        assert summary.skipped == 4

    async def test_failures_recorded_not_raised(self, user: User) -> None:
        await create_credential()
        adapter = ScriptedAdapter(script={None: ProviderUnavailable("down")})

        summary = await _scheduler(adapter).sweep()

        assert summary.statuses == {SyncStatus.FAILED.value: 1}


class TestTriggers:
    async def test_manual_trigger_returns_before_sync(self, user: User) -> None:
        credential = await create_credential()
        scheduler = _scheduler(ScriptedAdapter())

        task = scheduler.trigger(credential.id)
        assert not task.done()

        await scheduler.drain()
        runs = await _runs()
        assert len(runs) == 1
        assert runs[0].trigger == "manual"

    async def test_manual_trigger_bypasses_backoff(self, user: User) -> None:
        credential = await create_credential(next_sync_after=NOW + timedelta(hours=1))
        scheduler = _scheduler(ScriptedAdapter())

        scheduler.trigger(credential.id)
        await scheduler.drain()

        assert len(await _runs()) == 1

    async def test_external_trigger_looks_up_credential(self, user: User) -> None:
        credential = await create_credential(external_user_id="42")
        scheduler = _scheduler(ScriptedAdapter())

        task = scheduler.trigger_external("strava", "42")
        await scheduler.drain()

        run = task.result()
        assert run.credential_id == credential.id
        assert run.trigger == "webhook"

    async def test_external_trigger_refetches_named_object(self, user: User) -> None:
        await create_credential(external_user_id="42")
        adapter = ScriptedAdapter()
        adapter.changed = {"998877": [make_activity("998877")]}
        scheduler = _scheduler(adapter)

        task = scheduler.trigger_external("strava", "42", "998877")
        await scheduler.drain()

        assert adapter.refetched == ["998877"]
        assert task.result().records_imported == 1

    async def test_external_trigger_for_unknown_user_is_noop(self, user: User) -> None:
        scheduler = _scheduler(ScriptedAdapter())
        task = scheduler.trigger_external("strava", "nobody")
        await scheduler.drain()
        assert task.result() is None
        assert await _runs() == []

    async def test_revoke_external_deactivates(self, user: User) -> None:
        credential = await create_credential(external_user_id="42")
        scheduler = _scheduler(ScriptedAdapter())

        task = scheduler.revoke_external("strava", "42")
        await scheduler.drain()

        assert task.result() is True
        async with test_session() as session:
            stored = await session.get(IntegrationCredential, credential.id)
            assert stored.is_active is False


class TestLoop:
    async def test_start_and_stop(self, user: User) -> None:
        await create_credential()
        scheduler = _scheduler(ScriptedAdapter(), sync_interval_minutes=60)

        swept = asyncio.Event()
        sweep = scheduler.sweep

        async def sweep_and_signal():
            summary = await sweep()
            swept.set()
            return summary

        scheduler.sweep = sweep_and_signal
        await scheduler.start()
        assert scheduler.is_running
        await asyncio.wait_for(swept.wait(), timeout=5)
        await scheduler.stop()

        assert not scheduler.is_running
        assert len(await _runs()) == 1
