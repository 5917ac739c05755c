"""Integration service — credential connect/revoke and read queries for the API."""

import json
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fitsync.integrations.base import ProviderProfile, TokenSet
from fitsync.integrations.errors import IntegrationError
from fitsync.integrations.locks import CredentialLocks
from fitsync.integrations.merge import ImportOutcome, import_record
from fitsync.integrations.oauth import TokenLifecycleManager
from fitsync.integrations.registry import ProviderRegistry
from fitsync.models.credential import IntegrationCredential
from fitsync.models.external_record import ExternalRecord
from fitsync.models.sync_run import SyncRun

logger = logging.getLogger(__name__)


class IntegrationService:
    def __init__(
        self,
        registry: ProviderRegistry,
        token_manager: TokenLifecycleManager,
        locks: CredentialLocks,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.registry = registry
        self.tokens = token_manager
        self.locks = locks
        self._clock = clock

    # ── Connect / revoke ─────────────────────────────────────────────

    async def _fetch_profile(self, provider: str, access_token: str) -> ProviderProfile | None:
        adapter = self.registry.get(provider).adapter
        try:
            return await adapter.fetch_user_profile(access_token)
        except IntegrationError as e:
            logger.warning("Could not fetch %s profile during connect: %s", provider, e)
            return None

    async def _find(
        self, session: AsyncSession, user_id: int, provider: str
    ) -> IntegrationCredential | None:
        result = await session.execute(
            select(IntegrationCredential).where(
                IntegrationCredential.user_id == user_id,
                IntegrationCredential.provider == provider,
            )
        )
        return result.scalar_one_or_none()

    def _apply_tokens(
        self,
        credential: IntegrationCredential,
        tokens: TokenSet,
        external_user_id: str,
        profile: ProviderProfile | None,
    ) -> None:
        if credential.external_user_id and credential.external_user_id != external_user_id:
            # Different provider account: history from the old cursor does not apply
            credential.sync_cursor = None
        credential.external_user_id = external_user_id
        credential.access_token = tokens.access_token
        credential.refresh_token = tokens.refresh_token
        credential.token_expires_at = tokens.expires_at
        credential.scopes = ",".join(tokens.scopes) or None
        credential.is_active = True
        credential.connected_at = self._clock()
        credential.consecutive_failures = 0
        credential.next_sync_after = None
        if profile is not None:
            credential.metadata_json = json.dumps(
                {"display_name": profile.display_name, **profile.extra}, default=str
            )

    async def _reconnect(
        self,
        session: AsyncSession,
        credential_id: int,
        tokens: TokenSet,
        external_user_id: str,
        profile: ProviderProfile | None,
    ) -> IntegrationCredential:
        """Apply new tokens to an existing row once no sync for it is in flight."""
        # End the read transaction before waiting on a running sync
        await session.commit()
        async with self.locks.hold(credential_id):
            result = await session.execute(
                select(IntegrationCredential)
                .where(IntegrationCredential.id == credential_id)
                .execution_options(populate_existing=True)
            )
            credential = result.scalar_one()
            self._apply_tokens(credential, tokens, external_user_id, profile)
            await session.commit()
        return credential

    async def connect(
        self,
        session: AsyncSession,
        provider: str,
        code: str,
        state: str,
        redirect_url: str | None = None,
    ) -> IntegrationCredential:
        """Complete an OAuth callback and store the credential.

        Reconnecting an existing (user, provider) pair reactivates the same
        row, serialized with any sync running for it. The sync cursor survives
        unless the provider account changed.
        """
        tokens = await self.tokens.exchange_code(provider, code, state, redirect_url)
        profile = await self._fetch_profile(provider, tokens.access_token)
        external_user_id = tokens.external_user_id or (profile.external_user_id if profile else "")
        user_id = tokens.user_id

        credential = await self._find(session, user_id, provider)
        if credential is None:
            credential = IntegrationCredential(user_id=user_id, provider=provider, external_user_id="")
            self._apply_tokens(credential, tokens, external_user_id, profile)
            try:
                async with session.begin_nested():
                    session.add(credential)
            except IntegrityError:
                existing = await self._find(session, user_id, provider)
                if existing is None:
                    raise
                credential = await self._reconnect(
                    session, existing.id, tokens, external_user_id, profile
                )
            else:
                await session.commit()
        else:
            credential = await self._reconnect(
                session, credential.id, tokens, external_user_id, profile
            )

        logger.info(
            "Connected %s for user %s (credential %s, external user %s)",
            provider,
            user_id,
            credential.id,
            external_user_id or "unknown",
        )
        return credential

    async def revoke_credential(
        self, session: AsyncSession, credential_id: int, user_id: int
    ) -> IntegrationCredential | None:
        """Disconnect a credential. Waits for any in-flight sync to finish first."""
        async with self.locks.hold(credential_id):
            credential = await self.get_credential(session, credential_id, user_id)
            if credential is None:
                return None
            if credential.is_active:
                await self.tokens.revoke(credential)
            credential.next_sync_after = None
            await session.commit()
        logger.info("Credential %s revoked by user %s", credential_id, user_id)
        return credential

    # ── Queries ──────────────────────────────────────────────────────

    async def list_credentials(self, session: AsyncSession, user_id: int) -> list[IntegrationCredential]:
        result = await session.execute(
            select(IntegrationCredential)
            .where(IntegrationCredential.user_id == user_id)
            .order_by(IntegrationCredential.provider)
        )
        return list(result.scalars().all())

    async def get_credential(
        self, session: AsyncSession, credential_id: int, user_id: int
    ) -> IntegrationCredential | None:
        result = await session.execute(
            select(IntegrationCredential)
            .where(
                IntegrationCredential.id == credential_id,
                IntegrationCredential.user_id == user_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def sync_history(
        self, session: AsyncSession, credential_id: int, limit: int = 20
    ) -> list[SyncRun]:
        """Most recent runs first."""
        result = await session.execute(
            select(SyncRun)
            .where(SyncRun.credential_id == credential_id)
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_records(
        self,
        session: AsyncSession,
        credential_id: int,
        imported: bool | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[ExternalRecord], int]:
        base_query = select(ExternalRecord).where(ExternalRecord.credential_id == credential_id)
        count_query = select(func.count(ExternalRecord.id)).where(
            ExternalRecord.credential_id == credential_id
        )
        if imported is not None:
            base_query = base_query.where(ExternalRecord.is_imported.is_(imported))
            count_query = count_query.where(ExternalRecord.is_imported.is_(imported))

        total = (await session.execute(count_query)).scalar_one()
        result = await session.execute(
            base_query.order_by(ExternalRecord.start_time.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total

    async def import_external_record(
        self, session: AsyncSession, record_id: int, user_id: int
    ) -> ImportOutcome | None:
        """Explicitly import one record as a workout session.

        Returns None when the record does not belong to one of the user's
        credentials.
        """
        result = await session.execute(
            select(ExternalRecord, IntegrationCredential)
            .join(IntegrationCredential, ExternalRecord.credential_id == IntegrationCredential.id)
            .where(ExternalRecord.id == record_id, IntegrationCredential.user_id == user_id)
        )
        row = result.first()
        if row is None:
            return None
        record, credential = row

        async with self.locks.hold(credential.id):
            outcome = await import_record(session, record, user_id, credential.provider)
            await session.commit()
        return outcome
