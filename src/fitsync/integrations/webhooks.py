"""Inbound webhook ingestion.

Each request moves ``received → verified → parsed → dispatched`` or ends in
``rejected``. Verification always happens before the body is parsed, and
dispatch only schedules work: the credential lookup and the sync itself run
out-of-band on the scheduler.
"""

import enum
import logging
from dataclasses import dataclass

from fitsync.integrations.base import WebhookEvent
from fitsync.integrations.errors import MalformedRecord, UnknownProvider, VerificationFailed
from fitsync.integrations.registry import ProviderRegistry
from fitsync.integrations.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


class WebhookState(str, enum.Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    PARSED = "parsed"
    DISPATCHED = "dispatched"
    REJECTED = "rejected"


@dataclass
class WebhookOutcome:
    state: WebhookState
    status_code: int
    detail: str = ""
    event: WebhookEvent | None = None


class WebhookIngestor:
    def __init__(self, registry: ProviderRegistry, scheduler: SyncScheduler) -> None:
        self.registry = registry
        self.scheduler = scheduler

    def _reject(self, provider: str, status_code: int, reason: str) -> WebhookOutcome:
        logger.warning("Rejected %s webhook (%d): %s", provider, status_code, reason)
        return WebhookOutcome(state=WebhookState.REJECTED, status_code=status_code, detail=reason)

    def handle(self, provider: str, body: bytes, headers: dict[str, str]) -> WebhookOutcome:
        """Verify, parse and dispatch one inbound event.

        ``headers`` must have lowercased names.
        """
        try:
            handler = self.registry.get(provider).webhook
        except UnknownProvider as e:
            return self._reject(provider, 400, str(e))

        try:
            handler.verify(body, headers)
        except VerificationFailed as e:
            return self._reject(provider, 401, str(e))

        try:
            event = handler.parse(body)
        except MalformedRecord as e:
            return self._reject(provider, 400, str(e))

        if event is None:
            logger.debug("Ignoring %s webhook event with nothing to sync", provider)
            return WebhookOutcome(state=WebhookState.PARSED, status_code=200, detail="ignored")

        if event.is_deauthorization:
            self.scheduler.revoke_external(provider, event.external_user_id)
        else:
            # A deleted object cannot be re-fetched
            object_id = None if event.is_deletion else event.external_object_id
            self.scheduler.trigger_external(provider, event.external_user_id, object_id)

        logger.info(
            "Dispatched %s webhook %s for external user %s (object %s)",
            provider,
            event.event_type,
            event.external_user_id,
            event.external_object_id,
        )
        return WebhookOutcome(
            state=WebhookState.DISPATCHED, status_code=200, detail="accepted", event=event
        )

    def handshake(self, provider: str, params: dict[str, str]) -> dict[str, str]:
        """Answer a subscription verification request.

        Raises:
            UnknownProvider: No such provider.
            VerificationFailed: The verify token or mode does not match.
        """
        response = self.registry.get(provider).webhook.handshake(params)
        logger.info("Answered %s webhook subscription handshake", provider)
        return response
