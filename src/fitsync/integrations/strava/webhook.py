"""Strava push subscription: signature check, event parsing and handshake."""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any

from fitsync.integrations.base import WebhookEvent, WebhookHandler
from fitsync.integrations.errors import MalformedRecord, VerificationFailed

SIGNATURE_HEADER = "x-hub-signature"
ACTIVITY_ASPECTS = ("create", "update", "delete")


def _identifier(value: Any) -> str | None:
    # bool is an int subclass and never a valid id
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip().isdigit():
        return value.strip()
    return None


def _event_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRecord(f"Strava event_time is not an epoch: {value!r}")
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError) as e:
        raise MalformedRecord(f"Strava event_time out of range: {value}") from e


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class StravaWebhook(WebhookHandler):
    def __init__(self, secret: str, verify_token: str) -> None:
        self._secret = secret
        self._verify_token = verify_token

    def verify(self, body: bytes, headers: dict[str, str]) -> None:
        if not self._secret:
            raise VerificationFailed("Strava webhook secret is not configured")

        signature = headers.get(SIGNATURE_HEADER, "").strip().lower()
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        if not signature:
            raise VerificationFailed("Missing Strava signature header")

        if not hmac.compare_digest(signature.encode(), sign(body, self._secret).encode()):
            raise VerificationFailed("Strava signature mismatch")

    def parse(self, body: bytes) -> WebhookEvent | None:
        try:
            data: Any = json.loads(body)
        except ValueError as e:
            raise MalformedRecord("Strava webhook body is not JSON") from e
        if not isinstance(data, dict):
            raise MalformedRecord("Strava webhook body is not an object")

        owner_id = _identifier(data.get("owner_id"))
        if owner_id is None:
            raise MalformedRecord("Strava webhook has no owner_id")
        object_id = _identifier(data.get("object_id"))
        if data.get("object_id") is not None and object_id is None:
            raise MalformedRecord("Strava webhook object_id is not an id")
        event_time = _event_time(data.get("event_time"))

        object_type = data.get("object_type")
        if object_type == "athlete":
            updates = data.get("updates") or {}
            if not isinstance(updates, dict):
                raise MalformedRecord("Strava athlete event updates is not an object")
            if str(updates.get("authorized", "")).lower() != "false":
                return None
            return WebhookEvent(
                provider="strava",
                external_user_id=owner_id,
                event_type="deauthorize",
                external_object_id=object_id or owner_id,
                event_time=event_time,
            )

        if object_type != "activity":
            return None

        aspect = data.get("aspect_type")
        if aspect not in ACTIVITY_ASPECTS:
            raise MalformedRecord(f"Unknown Strava aspect_type: {aspect!r}")

        return WebhookEvent(
            provider="strava",
            external_user_id=owner_id,
            event_type=f"activity.{aspect}",
            external_object_id=object_id,
            event_time=event_time,
        )

    def handshake(self, params: dict[str, str]) -> dict[str, str]:
        mode = params.get("hub.mode")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge")
        if (
            mode != "subscribe"
            or not challenge
            or not self._verify_token
            or not hmac.compare_digest(token.encode(), self._verify_token.encode())
        ):
            raise VerificationFailed("Strava subscription handshake rejected")
        return {"hub.challenge": challenge}
