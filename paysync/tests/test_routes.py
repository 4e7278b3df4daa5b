from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from paysync import reconcile_scheduler
from paysync.app.config import load_sync_config
from paysync.app.routes import sync as sync_routes
from paysync.app.routes import webhooks
from paysync.app.services.sync import build_sync_engine
from paysync.app.sync import (
    InMemoryIdempotencyLedger,
    InMemorySubscriptionStore,
    Outcome,
    PlanTier,
    ProviderPage,
    ReconciliationInProgress,
    StoreUnavailable,
    SubscriptionStatus,
)

SECRET = "whsec_routes"


class StaticProvider:
    def __init__(self, subscriptions=None) -> None:
        self.subscriptions = list(subscriptions or [])

    def list_subscriptions(self, *, limit, starting_after=None):
        return ProviderPage(data=self.subscriptions, has_more=False)


def _engine(**env_overrides):
    env = {"BILLING_WEBHOOK_SECRET": SECRET, "RECONCILE_ENABLED": "false"}
    env.update(env_overrides)
    return build_sync_engine(
        load_sync_config(env),
        store=InMemorySubscriptionStore(),
        ledger=InMemoryIdempotencyLedger(),
        provider=StaticProvider([{"id": "sub_9", "status": "pastDue", "updated": 1_700_000_000}]),
    )


@pytest.fixture
def engine(monkeypatch):
    built = _engine()
    monkeypatch.setattr(webhooks, "get_sync_engine", lambda: built)
    monkeypatch.setattr(sync_routes, "get_sync_engine", lambda: built)
    monkeypatch.setattr(reconcile_scheduler, "get_sync_engine", lambda: built)
    reconcile_scheduler._reset_metrics_for_testing()
    return built


def _body(event_id: str, status: str, created: int, subscription_id: str = "sub_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": "subscription.updated",
            "created": created,
            "data": {"object": {"id": subscription_id, "status": status}},
        }
    ).encode("utf-8")


def _request(body: bytes, headers) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/billing/webhook",
        "query_string": b"",
        "headers": [(key.lower().encode("latin-1"), value.encode("latin-1")) for key, value in headers.items()],
    }

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def _deliver(engine, body: bytes, *, signature=None):
    header = signature if signature is not None else engine.verifier.sign(body, timestamp=int(time.time()))
    request = _request(body, {"Billing-Signature": header, "Content-Type": "application/json"})
    return asyncio.run(webhooks.receive_webhook(request))


def test_webhook_applies_reversed_events_and_acknowledges(engine):
    second = _deliver(engine, _body("ev_2", "active", 200))
    first = _deliver(engine, _body("ev_1", "trialing", 100))
    replay = _deliver(engine, _body("ev_1", "trialing", 100))

    assert second.status_code == 200
    assert json.loads(second.body)["disposition"] == "applied"
    assert first.status_code == 200
    assert json.loads(first.body)["disposition"] == "skipped_stale"
    assert replay.status_code == 200
    assert json.loads(replay.body) == json.loads(first.body)
    stored = engine.store.get("sub_1")
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.source_event_timestamp == datetime.fromtimestamp(200, tz=timezone.utc)


def test_webhook_rejects_bad_signature(engine):
    with pytest.raises(HTTPException) as excinfo:
        _deliver(engine, _body("ev_1", "active", 100), signature=f"t={int(time.time())},v1={'0' * 64}")

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["error"] == "signature_mismatch"
    assert engine.ledger.get("ev_1") is None


def test_webhook_acknowledges_permanent_data_errors(engine):
    body = json.dumps(
        {"id": "ev_x", "type": "customer.created", "created": 100, "data": {"object": {"id": "cus_1"}}}
    ).encode("utf-8")

    response = _deliver(engine, body)

    assert response.status_code == 200
    payload = json.loads(response.body)
    assert payload["status"] == "failed"
    assert payload["errorKind"] == "unknown_event_type"
    assert payload["retryable"] is False


def test_webhook_asks_for_retry_on_transient_failure(engine, monkeypatch):
    def unavailable(subscription_id, occurred_at, transition):
        raise StoreUnavailable("database is down")

    monkeypatch.setattr(engine.store, "apply", unavailable)

    response = _deliver(engine, _body("ev_1", "active", 100))

    assert response.status_code == 503
    assert json.loads(response.body)["errorKind"] == "store_unavailable"


def test_webhook_deadline_returns_503(monkeypatch):
    built = _engine(WEBHOOK_DEADLINE_SECONDS="0.1")
    monkeypatch.setattr(webhooks, "get_sync_engine", lambda: built)

    class SlowProcessor:
        def process(self, event, *, deadline=None):
            time.sleep(0.5)
            return Outcome.pending(event.event_id, kind="late", detail="late")

    built.processor = SlowProcessor()

    response = _deliver(built, _body("ev_1", "active", 100))

    assert response.status_code == 503
    assert json.loads(response.body)["errorKind"] == "deadline_exceeded"


def test_access_route_exposes_status_and_tier_only(engine):
    _deliver(engine, _body("ev_1", "past_due", 100))

    response = sync_routes.get_subscription_access("sub_1")

    assert response.model_dump(by_alias=True) == {
        "subscriptionId": "sub_1",
        "status": SubscriptionStatus.PAST_DUE,
        "planTier": PlanTier.FREE,
    }

    with pytest.raises(HTTPException) as excinfo:
        sync_routes.get_subscription_access("sub_missing")
    assert excinfo.value.status_code == 404


def test_outcomes_route_combines_log_and_ledger(engine):
    _deliver(engine, _body("ev_1", "active", 100))
    _deliver(engine, _body("ev_1", "active", 100))

    response = sync_routes.list_outcomes(limit=10)

    assert response.summary.processed == 1
    assert response.summary.duplicates == 1
    assert response.ledger["succeeded"] == 1
    assert len(response.recent) == 2
    assert response.recent[0].duplicate is True


def test_reconcile_route_runs_pass_and_lists_reports(engine):
    report = sync_routes.trigger_reconciliation()

    assert report.created == 1
    assert engine.store.get("sub_9").status == SubscriptionStatus.PAST_DUE

    listing = sync_routes.list_reconciliations(limit=5)
    assert listing.reports == [report]
    assert listing.running is False
    assert listing.scheduler["runs"] == 1


def test_reconcile_route_conflicts_with_running_pass(engine, monkeypatch):
    def busy(*, cancel_event=None):
        raise ReconciliationInProgress("A reconciliation pass is already running")

    monkeypatch.setattr(engine.reconciliation_job, "reconcile", busy)

    with pytest.raises(HTTPException) as excinfo:
        sync_routes.trigger_reconciliation()

    assert excinfo.value.status_code == 409
