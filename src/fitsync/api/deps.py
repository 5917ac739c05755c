"""Wiring of the integration components and their FastAPI dependency."""

from dataclasses import dataclass

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fitsync.config import Settings, get_settings
from fitsync.integrations.locks import CredentialLocks
from fitsync.integrations.oauth import TokenLifecycleManager
from fitsync.integrations.orchestrator import SyncOrchestrator
from fitsync.integrations.registry import ProviderRegistry, build_registry
from fitsync.integrations.scheduler import SyncScheduler
from fitsync.integrations.service import IntegrationService
from fitsync.integrations.webhooks import WebhookIngestor

# MVP: single user, id=1
DEFAULT_USER_ID = 1


@dataclass
class Integrations:
    registry: ProviderRegistry
    tokens: TokenLifecycleManager
    locks: CredentialLocks
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler
    service: IntegrationService
    webhooks: WebhookIngestor


def build_integrations(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    registry: ProviderRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Integrations:
    """Build every integration component around one registry and one lock table."""
    settings = settings or get_settings()
    registry = registry or build_registry(settings, transport=transport)
    tokens = TokenLifecycleManager(registry, settings, transport=transport)
    locks = CredentialLocks()
    orchestrator = SyncOrchestrator(registry, tokens, session_factory, settings, locks=locks)
    scheduler = SyncScheduler(orchestrator, session_factory, settings)
    return Integrations(
        registry=registry,
        tokens=tokens,
        locks=locks,
        orchestrator=orchestrator,
        scheduler=scheduler,
        service=IntegrationService(registry, tokens, locks),
        webhooks=WebhookIngestor(registry, scheduler),
    )


def get_integrations(request: Request) -> Integrations:
    return request.app.state.integrations
