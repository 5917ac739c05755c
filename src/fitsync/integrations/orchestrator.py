"""Sync orchestrator — one pull-sync pass over one credential.

A pass refreshes the token if needed, pulls pages from the provider adapter
starting at the stored cursor, merges every record, and commits each page's
merges together with the advanced cursor. Failures keep whatever pages
already committed; the cursor never moves past the last completed page.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fitsync.config import Settings, get_settings
from fitsync.integrations.base import ActivityPage, CanonicalActivity, ProviderAdapter
from fitsync.integrations.errors import CredentialRevoked, IntegrationError, RateLimited
from fitsync.integrations.locks import CredentialLocks
from fitsync.integrations.merge import ImportPolicy, import_record, merge_record
from fitsync.integrations.oauth import TokenLifecycleManager
from fitsync.integrations.registry import ProviderRegistry
from fitsync.models.credential import IntegrationCredential
from fitsync.models.sync_run import SyncRun, SyncStatus, SyncTrigger

logger = logging.getLogger(__name__)


@dataclass
class SyncCounters:
    processed: int = 0
    imported: int = 0
    skipped: int = 0
    sessions_created: int = 0
    pages: int = 0


def backoff_delay(failures: int, base: timedelta, ceiling: timedelta, max_attempts: int) -> timedelta:
    """Exponential delay, exponent capped at ``max_attempts``, value capped at ``ceiling``."""
    exponent = min(max(failures, 1), max_attempts) - 1
    return min(base * (2**exponent), ceiling)


class SyncOrchestrator:
    """Runs serialized, resumable sync passes."""

    def __init__(
        self,
        registry: ProviderRegistry,
        token_manager: TokenLifecycleManager,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        locks: CredentialLocks | None = None,
        import_policy: ImportPolicy | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        settings = settings or get_settings()
        self.registry = registry
        self.tokens = token_manager
        self.session_factory = session_factory
        self.locks = locks or CredentialLocks()
        self.import_policy = import_policy or ImportPolicy(settings.auto_import_activity_types)
        self._clock = clock
        self._page_size = settings.sync_page_size
        self._max_pages = settings.sync_max_pages
        self._budget = settings.sync_run_budget_seconds
        self._claim_ttl = timedelta(minutes=settings.sync_claim_ttl_minutes)
        self._backoff_base = timedelta(minutes=settings.backoff_base_minutes)
        self._backoff_ceiling = timedelta(minutes=settings.backoff_ceiling_minutes)
        self._backoff_attempts = settings.backoff_max_attempts

    async def run_sync(
        self,
        credential_id: int,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        object_ids: Sequence[str] = (),
    ) -> SyncRun | None:
        """Perform one sync pass.

        ``object_ids`` names provider objects reported as changed (by a
        webhook); they are re-fetched and merged before the cursor pass.

        Returns:
            The finalized SyncRun, or None when the pass was skipped because
            another run holds the credential, or the credential is missing
            or inactive.
        """
        async with self.locks.try_hold(credential_id) as acquired:
            if not acquired:
                logger.info("Sync already in progress for credential %s, skipping", credential_id)
                return None
            async with self.session_factory() as session:
                return await self._run_locked(session, credential_id, trigger, object_ids)

    # ── Claim ────────────────────────────────────────────────────────

    async def _claim(
        self, session: AsyncSession, credential: IntegrationCredential, trigger: SyncTrigger
    ) -> SyncRun | None:
        """Create the running SyncRun that serves as the database-level claim."""
        now = self._clock()
        result = await session.execute(
            select(SyncRun).where(
                SyncRun.credential_id == credential.id,
                SyncRun.status == SyncStatus.RUNNING.value,
            )
        )
        running = result.scalar_one_or_none()
        if running is not None:
            if now - running.started_at < self._claim_ttl:
                return None
            logger.warning(
                "Reclaiming abandoned sync run %s for credential %s", running.id, credential.id
            )
            running.status = SyncStatus.FAILED.value
            running.completed_at = now
            running.error_message = "Abandoned: claim expired before completion"
            await session.flush()

        run = SyncRun(
            credential_id=credential.id,
            status=SyncStatus.RUNNING.value,
            trigger=trigger.value,
            started_at=now,
            cursor_after=credential.sync_cursor,
        )
        session.add(run)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return None
        return run

    # ── Main loop ────────────────────────────────────────────────────

    async def _run_locked(
        self,
        session: AsyncSession,
        credential_id: int,
        trigger: SyncTrigger,
        object_ids: Sequence[str],
    ) -> SyncRun | None:
        credential = await session.get(IntegrationCredential, credential_id)
        if credential is None or not credential.is_active:
            logger.info("Credential %s missing or inactive, not syncing", credential_id)
            return None

        run = await self._claim(session, credential, trigger)
        if run is None:
            logger.info("Credential %s is claimed by another worker, skipping", credential_id)
            return None

        logger.info(
            "Sync run %s started for credential %s (%s, trigger=%s, cursor=%s)",
            run.id,
            credential.id,
            credential.provider,
            trigger.value,
            credential.sync_cursor,
        )
        counters = SyncCounters()
        try:
            return await self._execute(session, run, credential, counters, object_ids)
        except BaseException as e:
            # Never leave the claim row running: cancellation or a bug still closes the run
            await self._interrupted(session, run, credential, counters, e)
            raise

    async def _execute(
        self,
        session: AsyncSession,
        run: SyncRun,
        credential: IntegrationCredential,
        counters: SyncCounters,
        object_ids: Sequence[str],
    ) -> SyncRun:
        try:
            adapter = self.registry.get(credential.provider).adapter
            await self.tokens.refresh_if_needed(credential)
        except CredentialRevoked as e:
            return await self._finalize(
                session, run, credential, counters, SyncStatus.FAILED, e, revoked=True
            )
        except IntegrationError as e:
            return await self._finalize(session, run, credential, counters, SyncStatus.FAILED, e)
        await session.commit()

        deadline = asyncio.get_running_loop().time() + self._budget
        error = await self._refresh_objects(session, run, credential, adapter, object_ids, counters, deadline)
        if error is None:
            error = await self._pull_pages(session, run, credential, adapter, counters, deadline)

        if error is None:
            status = SyncStatus.SUCCEEDED
        elif counters.pages > 0:
            status = SyncStatus.PARTIALLY_FAILED
        else:
            status = SyncStatus.FAILED
        return await self._finalize(session, run, credential, counters, status, error)

    async def _refresh_objects(
        self,
        session: AsyncSession,
        run: SyncRun,
        credential: IntegrationCredential,
        adapter: ProviderAdapter,
        object_ids: Sequence[str],
        counters: SyncCounters,
        deadline: float,
    ) -> Exception | None:
        """Re-fetch objects the provider reported as changed.

        Changed objects usually sit behind the cursor, so the cursor pass alone
        would never see the change. Fetch failures are logged and left to the
        cursor pass; only a database failure stops the run.
        """
        loop = asyncio.get_running_loop()
        for object_id in object_ids:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                records = await asyncio.wait_for(
                    adapter.fetch_changed_records(credential.access_token, object_id),
                    timeout=remaining,
                )
            except TimeoutError:
                return None
            except IntegrationError as e:
                logger.warning(
                    "Could not re-fetch %s object %s for credential %s: %s",
                    credential.provider,
                    object_id,
                    credential.id,
                    e,
                )
                continue

            try:
                imported, skipped, sessions = await self._merge_records(session, credential, records)
                self._apply_counts(run, counters, len(records), imported, skipped, sessions)
                await session.commit()
            except SQLAlchemyError as e:
                logger.exception(
                    "Merge of changed object %s failed for credential %s", object_id, credential.id
                )
                await self._recover(session, run, credential)
                return e
            self._bump(counters, len(records), imported, skipped, sessions)
            logger.info(
                "Re-fetched %s object %s for credential %s (%d records)",
                credential.provider,
                object_id,
                credential.id,
                len(records),
            )
        return None

    async def _pull_pages(
        self,
        session: AsyncSession,
        run: SyncRun,
        credential: IntegrationCredential,
        adapter: ProviderAdapter,
        counters: SyncCounters,
        deadline: float,
    ) -> Exception | None:
        """Fetch and merge pages until done. Returns the error that stopped the loop."""
        loop = asyncio.get_running_loop()
        cursor = credential.sync_cursor

        while True:
            if counters.pages >= self._max_pages:
                logger.info(
                    "Credential %s reached the %d page limit; resuming next run",
                    credential.id,
                    self._max_pages,
                )
                return None

            remaining = deadline - loop.time()
            if remaining <= 0:
                return TimeoutError(f"Sync budget of {self._budget:g}s exceeded")

            try:
                page = await asyncio.wait_for(
                    adapter.fetch_activities_since(credential.access_token, cursor, self._page_size),
                    timeout=remaining,
                )
            except TimeoutError:
                return TimeoutError(f"Sync budget of {self._budget:g}s exceeded")
            except IntegrationError as e:
                logger.warning("Page fetch failed for credential %s: %s", credential.id, e)
                return e
            except Exception as e:
                logger.exception("Unexpected adapter failure for credential %s", credential.id)
                return e

            try:
                await self._merge_page(session, run, credential, page, counters)
            except SQLAlchemyError as e:
                logger.exception("Merge failed for credential %s", credential.id)
                await self._recover(session, run, credential)
                return e

            cursor = page.next_cursor
            if not page.has_more:
                return None

    async def _merge_records(
        self, session: AsyncSession, credential: IntegrationCredential, records: list[CanonicalActivity]
    ) -> tuple[int, int, int]:
        """Merge records and apply the import policy. Returns (imported, skipped, sessions)."""
        imported = skipped = sessions = 0
        for activity in records:
            merged = await merge_record(session, credential.id, activity)
            if merged.imported:
                imported += 1
            else:
                skipped += 1
            if self.import_policy.should_import(merged.record):
                outcome = await import_record(
                    session, merged.record, credential.user_id, credential.provider
                )
                if outcome.created:
                    sessions += 1
        return imported, skipped, sessions

    @staticmethod
    def _apply_counts(
        run: SyncRun, counters: SyncCounters, processed: int, imported: int, skipped: int, sessions: int
    ) -> None:
        run.records_processed = counters.processed + processed
        run.records_imported = counters.imported + imported
        run.records_skipped = counters.skipped + skipped
        run.sessions_created = counters.sessions_created + sessions

    @staticmethod
    def _bump(counters: SyncCounters, processed: int, imported: int, skipped: int, sessions: int) -> None:
        counters.processed += processed
        counters.imported += imported
        counters.skipped += skipped
        counters.sessions_created += sessions

    async def _merge_page(
        self,
        session: AsyncSession,
        run: SyncRun,
        credential: IntegrationCredential,
        page: ActivityPage,
        counters: SyncCounters,
    ) -> None:
        """Merge one page and commit it together with the advanced cursor."""
        processed = len(page.records) + page.malformed
        imported, skipped, sessions = await self._merge_records(session, credential, page.records)
        skipped += page.malformed

        credential.sync_cursor = page.next_cursor
        run.cursor_after = page.next_cursor
        run.pages_fetched = counters.pages + 1
        self._apply_counts(run, counters, processed, imported, skipped, sessions)
        await session.commit()

        counters.pages += 1
        self._bump(counters, processed, imported, skipped, sessions)

    async def _recover(
        self, session: AsyncSession, run: SyncRun, credential: IntegrationCredential
    ) -> None:
        await session.rollback()
        await session.refresh(run)
        await session.refresh(credential)

    async def _interrupted(
        self,
        session: AsyncSession,
        run: SyncRun,
        credential: IntegrationCredential,
        counters: SyncCounters,
        error: BaseException,
    ) -> None:
        """Close a run that was cancelled or hit an unexpected error."""
        try:
            await self._recover(session, run, credential)
            if run.status != SyncStatus.RUNNING.value:
                return
            if isinstance(error, asyncio.CancelledError):
                # Shutdown is not a provider failure: leave backoff alone
                now = self._clock()
                run.status = SyncStatus.FAILED.value
                run.completed_at = now
                run.error_message = "Cancelled before completion"
                run.cursor_after = credential.sync_cursor
                await session.commit()
                logger.warning("Sync run %s for credential %s cancelled", run.id, credential.id)
            else:
                logger.error(
                    "Sync run %s for credential %s crashed: %r", run.id, credential.id, error
                )
                await self._finalize(
                    session, run, credential, counters, SyncStatus.FAILED, Exception(repr(error))
                )
        except Exception:
            logger.exception("Could not close interrupted sync run %s", run.id)

    # ── Finalize ─────────────────────────────────────────────────────

    async def _finalize(
        self,
        session: AsyncSession,
        run: SyncRun,
        credential: IntegrationCredential,
        counters: SyncCounters,
        status: SyncStatus,
        error: Exception | None,
        revoked: bool = False,
    ) -> SyncRun:
        now = self._clock()
        run.status = status.value
        run.completed_at = now
        run.pages_fetched = counters.pages
        run.records_processed = counters.processed
        run.records_imported = counters.imported
        run.records_skipped = counters.skipped
        run.sessions_created = counters.sessions_created
        run.cursor_after = credential.sync_cursor
        run.error_message = str(error) if error is not None else None

        credential.last_sync_at = now
        if revoked:
            credential.is_active = False
            credential.next_sync_after = None
        elif status == SyncStatus.FAILED:
            credential.consecutive_failures += 1
            delay = backoff_delay(
                credential.consecutive_failures,
                self._backoff_base,
                self._backoff_ceiling,
                self._backoff_attempts,
            )
            if isinstance(error, RateLimited) and error.retry_after:
                delay = max(delay, timedelta(seconds=error.retry_after))
            credential.next_sync_after = now + delay
        else:
            # Any committed page counts as progress
            credential.consecutive_failures = 0
            credential.next_sync_after = None
            if isinstance(error, RateLimited) and error.retry_after:
                credential.next_sync_after = now + timedelta(seconds=error.retry_after)

        await session.commit()

        log = logger.info if status == SyncStatus.SUCCEEDED else logger.warning
        log(
            "Sync run %s for credential %s finished %s: processed=%d imported=%d skipped=%d "
            "sessions=%d pages=%d cursor=%s%s",
            run.id,
            credential.id,
            status.value,
            counters.processed,
            counters.imported,
            counters.skipped,
            counters.sessions_created,
            counters.pages,
            credential.sync_cursor,
            f" error={error}" if error is not None else "",
        )
        return run
