"""MyFitnessPal webhooks: shared-token header check and diary event parsing."""

import hmac
import json
from datetime import datetime
from typing import Any

from fitsync.integrations.base import WebhookEvent, WebhookHandler
from fitsync.integrations.errors import MalformedRecord, VerificationFailed

TOKEN_HEADER = "x-mfp-webhook-token"
SYNC_EVENT_TYPES = ("diary_updated", "exercise_updated", "exercise_deleted")


def _scalar_id(value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value).strip() or None


class MyFitnessPalWebhook(WebhookHandler):
    def __init__(self, token: str) -> None:
        self._token = token

    def _matches(self, candidate: str) -> bool:
        return bool(self._token) and hmac.compare_digest(
            candidate.encode(), self._token.encode()
        )

    def verify(self, body: bytes, headers: dict[str, str]) -> None:
        if not self._token:
            raise VerificationFailed("MyFitnessPal webhook token is not configured")
        if not self._matches(headers.get(TOKEN_HEADER, "")):
            raise VerificationFailed("MyFitnessPal webhook token mismatch")

    def parse(self, body: bytes) -> WebhookEvent | None:
        try:
            data: Any = json.loads(body)
        except ValueError as e:
            raise MalformedRecord("MyFitnessPal webhook body is not JSON") from e
        if not isinstance(data, dict):
            raise MalformedRecord("MyFitnessPal webhook body is not an object")
        user_id = _scalar_id(data.get("user_id"))
        if user_id is None:
            raise MalformedRecord("MyFitnessPal webhook has no user_id")

        event_type = data.get("type", "diary_updated")
        if event_type not in SYNC_EVENT_TYPES:
            return None

        event_time = None
        if isinstance(data.get("timestamp"), str):
            try:
                event_time = datetime.fromisoformat(data["timestamp"])
            except ValueError:
                event_time = None

        raw_object_id = data.get("object_id") or data.get("date")
        object_id = _scalar_id(raw_object_id)
        if raw_object_id is not None and object_id is None:
            raise MalformedRecord("MyFitnessPal webhook object_id is not an id")
        return WebhookEvent(
            provider="myfitnesspal",
            external_user_id=user_id,
            event_type=event_type,
            external_object_id=object_id,
            event_time=event_time,
        )

    def handshake(self, params: dict[str, str]) -> dict[str, str]:
        challenge = params.get("challenge")
        if not challenge or not self._matches(params.get("verify_token", "")):
            raise VerificationFailed("MyFitnessPal subscription handshake rejected")
        return {"challenge": challenge}
