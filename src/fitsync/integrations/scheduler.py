"""Sync scheduler — periodic sweep plus on-demand triggers.

Usage:
    scheduler = SyncScheduler(orchestrator, session_factory)
    await scheduler.start()
    # ... later ...
    await scheduler.stop()
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fitsync.config import Settings, get_settings
from fitsync.integrations.locks import CredentialLocks
from fitsync.integrations.orchestrator import SyncOrchestrator
from fitsync.models.credential import IntegrationCredential
from fitsync.models.sync_run import SyncRun, SyncStatus, SyncTrigger

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    considered: int = 0
    deferred: int = 0
    skipped: int = 0
    statuses: dict[str, int] = field(default_factory=dict)


async def find_active_credential(
    session: AsyncSession, provider: str, external_user_id: str
) -> IntegrationCredential | None:
    result = await session.execute(
        select(IntegrationCredential).where(
            IntegrationCredential.provider == provider,
            IntegrationCredential.external_user_id == external_user_id,
            IntegrationCredential.is_active.is_(True),
        )
    )
    return result.scalars().first()


class SyncScheduler:
    """Drives the orchestrator from a timer loop and from external triggers."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        settings = settings or get_settings()
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self._clock = clock
        self._interval = settings.sync_interval_minutes * 60
        self._max_concurrent = settings.max_concurrent_syncs
        self._running = False
        self._task: asyncio.Task | None = None
        # Strong references so triggered tasks are not garbage collected
        self._pending: set[asyncio.Task] = set()

    @property
    def locks(self) -> CredentialLocks:
        return self.orchestrator.locks

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Periodic sweep ───────────────────────────────────────────────

    async def sweep(self) -> SweepSummary:
        """Run one sync pass for every due active credential."""
        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(IntegrationCredential.id, IntegrationCredential.next_sync_after)
                .where(IntegrationCredential.is_active.is_(True))
                .order_by(IntegrationCredential.id)
            )
            rows = result.all()

        summary = SweepSummary(considered=len(rows))
        due: list[int] = []
        for credential_id, next_sync_after in rows:
            if next_sync_after is not None and next_sync_after > now:
                summary.deferred += 1
            else:
                due.append(credential_id)

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def run_one(credential_id: int) -> SyncRun | None:
            async with semaphore:
                return await self.orchestrator.run_sync(credential_id, SyncTrigger.PERIODIC)

        results = await asyncio.gather(*(run_one(cid) for cid in due), return_exceptions=True)
        for credential_id, outcome in zip(due, results):
            if isinstance(outcome, BaseException):
                logger.error("Sync for credential %s raised: %s", credential_id, outcome)
                summary.statuses[SyncStatus.FAILED.value] = summary.statuses.get(SyncStatus.FAILED.value, 0) + 1
            elif outcome is None:
                summary.skipped += 1
            else:
                summary.statuses[outcome.status] = summary.statuses.get(outcome.status, 0) + 1

        logger.info(
            "Sync sweep: %d active, %d due, %d in backoff, %d skipped, results=%s",
            summary.considered,
            len(due),
            summary.deferred,
            summary.skipped,
            summary.statuses,
        )
        return summary

    async def start(self) -> None:
        """Start the periodic sweep loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Sync scheduler started (interval %ss)", self._interval)

    async def stop(self) -> None:
        """Stop the loop and wait for triggered work to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("Sync scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Sync sweep failed")
            await asyncio.sleep(self._interval)

    # ── On-demand triggers ───────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc)

    def trigger(
        self, credential_id: int, trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> asyncio.Task:
        """Schedule a sync pass and return without waiting for it."""
        logger.info("Queued %s sync for credential %s", trigger.value, credential_id)
        return self._spawn(
            self.orchestrator.run_sync(credential_id, trigger),
            name=f"sync-{credential_id}",
        )

    def trigger_external(
        self, provider: str, external_user_id: str, object_id: str | None = None
    ) -> asyncio.Task:
        """Schedule a webhook-driven sync for the provider account.

        ``object_id`` names a created or updated provider object to re-fetch
        before the cursor pass.
        """
        return self._spawn(
            self._sync_external(provider, external_user_id, object_id),
            name=f"webhook-sync-{provider}-{external_user_id}",
        )

    def revoke_external(self, provider: str, external_user_id: str) -> asyncio.Task:
        """Schedule a local revoke after the provider reported deauthorization."""
        return self._spawn(
            self._revoke_external(provider, external_user_id),
            name=f"deauthorize-{provider}-{external_user_id}",
        )

    async def _sync_external(
        self, provider: str, external_user_id: str, object_id: str | None = None
    ) -> SyncRun | None:
        async with self.session_factory() as session:
            credential = await find_active_credential(session, provider, external_user_id)
        if credential is None:
            logger.info("No active %s credential for external user %s", provider, external_user_id)
            return None
        object_ids = (object_id,) if object_id else ()
        return await self.orchestrator.run_sync(credential.id, SyncTrigger.WEBHOOK, object_ids)

    async def _revoke_external(self, provider: str, external_user_id: str) -> bool:
        async with self.session_factory() as session:
            credential = await find_active_credential(session, provider, external_user_id)
            if credential is None:
                logger.info(
                    "Deauthorization for unknown %s user %s ignored", provider, external_user_id
                )
                return False
            async with self.locks.hold(credential.id):
                # The provider already dropped the grant; no remote call needed
                credential.is_active = False
                credential.next_sync_after = None
                await session.commit()
        logger.info("Credential %s deactivated after %s deauthorization", credential.id, provider)
        return True

    async def drain(self) -> None:
        """Wait for every triggered task to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
