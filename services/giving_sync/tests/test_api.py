"""
Tests for the HTTP surface using FastAPI's TestClient.
"""

import json
from datetime import timedelta
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from services.giving_sync.api import create_app, route_event, secret_matches, sign_payload
from services.giving_sync.errors import ErrorKind, SourceAPIError
from services.giving_sync.lock import RunLock
from services.giving_sync.mappings import CategoryMapping, MappingTable
from services.giving_sync.models import SyncType
from services.giving_sync.watermark import SettingsStore, WatermarkStore

from .factories import T0


@pytest.fixture
def dispatched():
    return []


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def app(config, engine, source, ledger, clock, notifier, dispatched):
    return create_app(
        config,
        engine,
        source=source,
        ledger_factory=lambda: ledger,
        notifier=notifier,
        dispatch=dispatched.append,
        clock=clock,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def started(engine, clock):
    MappingTable(engine).upsert(CategoryMapping("F1", "General Fund", "General", "North"))
    WatermarkStore(SettingsStore(engine, clock=clock)).set(SyncType.STRIPE, T0 - timedelta(days=1))


def webhook_body(name: str) -> bytes:
    return json.dumps({"data": [{"type": "EventDelivery", "attributes": {"name": name}}]}).encode()


def signed_headers(secret: str, body: bytes):
    return {"X-PCO-Webhooks-Authenticity": sign_payload(secret, body), "Content-Type": "application/json"}


class TestHelpers:
    def test_secret_matches_any_configured_secret(self):
        assert secret_matches("b", ["a", "b"])
        assert not secret_matches("c", ["a", "b"])
        assert not secret_matches("", ["a"])
        assert not secret_matches(None, ["a"])

    def test_route_event(self):
        assert route_event("giving.v2.events.donation.updated") == SyncType.STRIPE
        assert route_event("giving.v2.events.batch.committed") == SyncType.BATCH
        assert route_event("people.v2.events.person.created") is None


class TestTriggerEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_unknown_sync_type_is_404(self, client):
        response = client.post("/sync/paypal", params={"webhook_secret": "trigger-secret"})
        assert response.status_code == 404

    def test_missing_or_wrong_secret_is_401(self, client):
        assert client.post("/sync/stripe").status_code == 401
        assert client.post("/sync/stripe", params={"webhook_secret": "nope"}).status_code == 401
        assert client.get("/sync/stripe", headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_trigger_runs_sync(self, client, ledger, source, started):
        source.add_donation("101", T0 - timedelta(hours=2), [("F1", 10000)], fee_cents=330)

        response = client.post("/sync/stripe", params={"webhook_secret": "trigger-secret"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["committed"] == 1
        assert body["processed"] == 1
        assert body["window"]["until"] == T0.isoformat()
        assert len(ledger.created) == 1

    def test_operator_bearer_token_is_accepted(self, client, started):
        response = client.get("/sync/batch", headers={"Authorization": "Bearer operator-token"})

        assert response.status_code == 200
        assert response.json()["initialized"] is True

    def test_busy_run_is_429(self, client, engine, clock, started):
        RunLock(engine, clock=clock).acquire("stripe")

        response = client.post("/sync/stripe", params={"webhook_secret": "trigger-secret"})

        assert response.status_code == 429
        assert response.json()["status"] == "busy"

    def test_failed_run_is_500(self, client, source, started, notifier):
        source.fail_with = SourceAPIError("Source unavailable", kind=ErrorKind.TRANSIENT)

        response = client.post("/sync/stripe", params={"webhook_secret": "trigger-secret"})

        assert response.status_code == 500
        assert response.json()["errors"][0]["kind"] == "transient"
        notifier.notify.assert_called_once()

    def test_preview_returns_would_be_transactions(self, client, ledger, source, started):
        source.add_donation("101", T0 - timedelta(hours=2), [("F1", 10000)])

        response = client.get("/sync/stripe/preview", params={"webhook_secret": "trigger-secret"})

        assert response.status_code == 200
        body = response.json()
        assert body["preview"] is True
        assert body["transactions"][0]["payload"]["Line"][0]["Amount"] == 100.0
        assert ledger.created == []

    def test_sync_summary_and_logs(self, client, started):
        client.post("/sync/stripe", params={"webhook_secret": "trigger-secret"})

        summary = client.get("/sync-summary", params={"webhook_secret": "trigger-secret"}).json()
        assert summary["stripe"]["status"] == "success"
        assert summary["batch"] is None

        logs = client.get("/logs", params={"webhook_secret": "trigger-secret", "sync_type": "stripe"}).json()
        assert [entry["status"] for entry in logs["entries"]] == ["success"]

    def test_summary_requires_auth(self, client):
        assert client.get("/sync-summary").status_code == 401
        assert client.get("/logs").status_code == 401


class TestWebhook:
    def test_valid_donation_event_dispatches_stripe_sync(self, client, dispatched):
        body = webhook_body("giving.v2.events.donation.created")

        response = client.post("/webhooks/source", content=body, headers=signed_headers("donation-secret", body))

        assert response.status_code == 202
        assert response.text == "Sync triggered."
        assert dispatched == [SyncType.STRIPE]

    def test_batch_event_dispatches_batch_sync(self, client, dispatched):
        body = webhook_body("giving.v2.events.batch.committed")

        response = client.post("/webhooks/source", content=body, headers=signed_headers("batch-secret", body))

        assert response.status_code == 202
        assert dispatched == [SyncType.BATCH]

    def test_bad_signature_is_403(self, client, dispatched):
        body = webhook_body("giving.v2.events.donation.created")

        response = client.post("/webhooks/source", content=body, headers=signed_headers("wrong", body))

        assert response.status_code == 403
        assert response.text == "Invalid signature."
        assert dispatched == []

    def test_signature_is_over_the_raw_body(self, client, dispatched):
        body = webhook_body("giving.v2.events.donation.created")
        headers = signed_headers("donation-secret", body)

        response = client.post("/webhooks/source", content=body + b" ", headers=headers)

        assert response.status_code == 403

    def test_invalid_json_is_400(self, client):
        response = client.post("/webhooks/source", content=b"{not json")
        assert response.status_code == 400

        response = client.post("/webhooks/source", content=b"[1, 2]")
        assert response.status_code == 400

    def test_unrouted_event_is_ignored(self, client, dispatched):
        body = webhook_body("people.v2.events.person.created")

        response = client.post("/webhooks/source", content=body, headers=signed_headers("person-secret", body))

        assert response.status_code == 202
        assert response.text == "Event ignored."
        assert dispatched == []

    def test_unconfigured_unrouted_event_is_ignored(self, client, dispatched):
        body = webhook_body("services.v2.events.plan.updated")

        response = client.post("/webhooks/source", content=body)

        assert response.status_code == 202
        assert dispatched == []

    def test_routed_event_without_secret_is_500(self, client, dispatched):
        body = webhook_body("giving.v2.events.donation.destroyed")

        response = client.post("/webhooks/source", content=body)

        assert response.status_code == 500
        assert dispatched == []

    def test_no_webhook_secrets_configured_is_500(self, config, engine, dispatched):
        config = config.model_copy(update={"webhook_secrets": {}})
        client = TestClient(create_app(config, engine, source=Mock(), ledger_factory=Mock(), dispatch=dispatched.append))

        response = client.post("/webhooks/source", content=webhook_body("giving.v2.events.donation.created"))

        assert response.status_code == 500
        assert response.text == "Webhook secret not configured."
