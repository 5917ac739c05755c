"""Tests for the webhook ingestor state machine."""

import json
from unittest.mock import MagicMock

import pytest

from fitsync.integrations.errors import UnknownProvider, VerificationFailed
from fitsync.integrations.registry import build_registry
from fitsync.integrations.strava.webhook import sign
from fitsync.integrations.webhooks import WebhookIngestor, WebhookState
from tests.conftest import make_settings

STRAVA_SECRET = "strava-webhook-secret"

ACTIVITY_EVENT = {
    "aspect_type": "update",
    "event_time": 1718000000,
    "object_id": 998877,
    "object_type": "activity",
    "owner_id": 42,
    "subscription_id": 1,
    "updates": {"title": "Renamed"},
}


def _signed(payload: dict) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode()
    return body, {"x-hub-signature": sign(body, STRAVA_SECRET)}


@pytest.fixture
def scheduler() -> MagicMock:
    return MagicMock()


@pytest.fixture
def ingestor(scheduler: MagicMock) -> WebhookIngestor:
    return WebhookIngestor(build_registry(make_settings()), scheduler)


class TestHandle:
    def test_verified_activity_event_dispatched(self, ingestor, scheduler) -> None:
        body, headers = _signed(ACTIVITY_EVENT)

        outcome = ingestor.handle("strava", body, headers)

        assert outcome.state == WebhookState.DISPATCHED
        assert outcome.status_code == 200
        assert outcome.event.external_object_id == "998877"
        scheduler.trigger_external.assert_called_once_with("strava", "42", "998877")
        scheduler.revoke_external.assert_not_called()

    def test_deleted_activity_not_refetched(self, ingestor, scheduler) -> None:
        body, headers = _signed({**ACTIVITY_EVENT, "aspect_type": "delete", "updates": {}})

        outcome = ingestor.handle("strava", body, headers)

        assert outcome.state == WebhookState.DISPATCHED
        scheduler.trigger_external.assert_called_once_with("strava", "42", None)

    def test_unknown_provider_rejected(self, ingestor, scheduler) -> None:
        outcome = ingestor.handle("fitbit", b"{}", {})

        assert outcome.state == WebhookState.REJECTED
        assert outcome.status_code == 400
        scheduler.trigger_external.assert_not_called()

    def test_bad_signature_rejected_before_parsing(self, ingestor, scheduler) -> None:
        outcome = ingestor.handle("strava", b"not even json", {"x-hub-signature": "00" * 32})

        assert outcome.state == WebhookState.REJECTED
        assert outcome.status_code == 401
        scheduler.trigger_external.assert_not_called()

    def test_malformed_verified_body_rejected(self, ingestor, scheduler) -> None:
        body, headers = _signed({"object_type": "activity", "aspect_type": "create"})

        outcome = ingestor.handle("strava", body, headers)

        assert outcome.state == WebhookState.REJECTED
        assert outcome.status_code == 400
        scheduler.trigger_external.assert_not_called()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"object_type": "athlete", "updates": ["authorized"]},
            {"event_time": "yesterday"},
            {"object_id": {"id": 1}},
        ],
    )
    def test_wrongly_typed_fields_rejected(self, ingestor, scheduler, overrides) -> None:
        body, headers = _signed({**ACTIVITY_EVENT, **overrides})

        outcome = ingestor.handle("strava", body, headers)

        assert outcome.state == WebhookState.REJECTED
        assert outcome.status_code == 400
        scheduler.trigger_external.assert_not_called()

    def test_unsynced_event_acknowledged(self, ingestor, scheduler) -> None:
        body, headers = _signed({**ACTIVITY_EVENT, "object_type": "route"})

        outcome = ingestor.handle("strava", body, headers)

        assert outcome.state == WebhookState.PARSED
        assert outcome.status_code == 200
        scheduler.trigger_external.assert_not_called()

    def test_deauthorization_dispatches_revoke(self, ingestor, scheduler) -> None:
        body, headers = _signed(
            {**ACTIVITY_EVENT, "object_type": "athlete", "object_id": 42, "updates": {"authorized": "false"}}
        )

        outcome = ingestor.handle("strava", body, headers)

        assert outcome.state == WebhookState.DISPATCHED
        scheduler.revoke_external.assert_called_once_with("strava", "42")
        scheduler.trigger_external.assert_not_called()

    def test_myfitnesspal_token(self, ingestor, scheduler) -> None:
        body = json.dumps({"type": "diary_updated", "user_id": "mfp-7", "date": "2024-06-10"}).encode()

        rejected = ingestor.handle("myfitnesspal", body, {"x-mfp-webhook-token": "guess"})
        accepted = ingestor.handle("myfitnesspal", body, {"x-mfp-webhook-token": "mfp-webhook-token"})

        assert rejected.status_code == 401
        assert accepted.state == WebhookState.DISPATCHED
        scheduler.trigger_external.assert_called_once_with("myfitnesspal", "mfp-7", "2024-06-10")


class TestHandshake:
    def test_strava_challenge_echoed(self, ingestor) -> None:
        params = {"hub.mode": "subscribe", "hub.verify_token": "strava-verify", "hub.challenge": "xyz"}
        assert ingestor.handshake("strava", params) == {"hub.challenge": "xyz"}

    def test_mismatch(self, ingestor) -> None:
        params = {"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "xyz"}
        with pytest.raises(VerificationFailed):
            ingestor.handshake("strava", params)

    def test_unknown_provider(self, ingestor) -> None:
        with pytest.raises(UnknownProvider):
            ingestor.handshake("fitbit", {})
