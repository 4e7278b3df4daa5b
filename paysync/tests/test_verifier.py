from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from paysync.app.sync import (
    MalformedPayload,
    SignatureMismatch,
    StaleTimestamp,
    WebhookVerifier,
)
from paysync.app.sync.verifier import compute_signature

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
NOW_TS = int(NOW.timestamp())


def _payload(**overrides) -> bytes:
    body = {
        "id": "evt_1",
        "type": "subscription.updated",
        "created": NOW_TS - 5,
        "data": {"object": {"id": "sub_1", "status": "active"}},
    }
    body.update(overrides)
    return json.dumps(body).encode("utf-8")


@pytest.fixture
def verifier() -> WebhookVerifier:
    return WebhookVerifier("whsec_test", tolerance_seconds=300, clock=lambda: NOW)


def test_verify_accepts_valid_signature(verifier):
    raw = _payload()
    event = verifier.verify(raw, verifier.sign(raw))

    assert event.event_id == "evt_1"
    assert event.event_type == "subscription.updated"
    assert event.subscription_id == "sub_1"
    assert event.occurred_at == datetime.fromtimestamp(NOW_TS - 5, tz=timezone.utc)
    assert event.payload_object["status"] == "active"


def test_verify_rejects_modified_body(verifier):
    raw = _payload()
    header = verifier.sign(raw)
    tampered = raw.replace(b"active", b"canceled")

    with pytest.raises(SignatureMismatch):
        verifier.verify(tampered, header)


def test_verify_signs_exact_bytes_not_reserialized_json(verifier):
    raw = b'{"id": "evt_2",   "type": "invoice.paid", "created": %d, "data": {"object": {"subscription": "sub_7"}}}' % (
        NOW_TS,
    )
    event = verifier.verify(raw, verifier.sign(raw))

    assert event.subscription_id == "sub_7"
    compact = json.dumps(json.loads(raw)).encode("utf-8")
    with pytest.raises(SignatureMismatch):
        verifier.verify(compact, verifier.sign(raw))


def test_verify_accepts_any_rotated_signature(verifier):
    raw = _payload()
    good = compute_signature("whsec_test", NOW_TS, raw)
    header = f"t={NOW_TS},v1={'0' * 64},v1={good}"

    assert verifier.verify(raw, header).event_id == "evt_1"


@pytest.mark.parametrize(
    "header",
    [None, "", "v1=abc", "t=notanumber,v1=abc", f"t={NOW_TS}"],
)
def test_verify_rejects_malformed_headers(verifier, header):
    with pytest.raises(SignatureMismatch):
        verifier.verify(_payload(), header)


def test_verify_rejects_timestamp_outside_tolerance(verifier):
    raw = _payload()
    header = verifier.sign(raw, timestamp=NOW_TS - 301)

    with pytest.raises(StaleTimestamp):
        verifier.verify(raw, header)


def test_verify_checks_signature_before_timestamp(verifier):
    raw = _payload()
    header = f"t={NOW_TS - 10_000},v1={'0' * 64}"

    with pytest.raises(SignatureMismatch):
        verifier.verify(raw, header)


def test_verify_requires_configured_secret():
    verifier = WebhookVerifier("", clock=lambda: NOW)
    raw = _payload()
    header = f"t={NOW_TS},v1={compute_signature('', NOW_TS, raw)}"

    with pytest.raises(SignatureMismatch):
        verifier.verify(raw, header)


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2, 3]",
        json.dumps({"type": "subscription.updated", "created": NOW_TS, "data": {"object": {}}}).encode(),
        json.dumps({"id": "evt_1", "created": NOW_TS, "data": {"object": {}}}).encode(),
        json.dumps({"id": "evt_1", "type": "subscription.updated", "data": {"object": {}}}).encode(),
        json.dumps({"id": "evt_1", "type": "subscription.updated", "created": NOW_TS, "data": {}}).encode(),
        json.dumps({"id": "evt_1", "type": "subscription.updated", "created": "yesterday", "data": {"object": {}}}).encode(),
    ],
)
def test_verify_rejects_malformed_payloads(verifier, raw):
    with pytest.raises(MalformedPayload):
        verifier.verify(raw, verifier.sign(raw))


def test_invoice_event_reads_embedded_subscription_id(verifier):
    raw = _payload(type="invoice.payment_failed", data={"object": {"id": "in_1", "subscription": {"id": "sub_3"}}})
    event = verifier.verify(raw, verifier.sign(raw))

    assert event.subscription_id == "sub_3"


def test_iso_creation_time_is_accepted(verifier):
    raw = _payload(created="2024-06-01T11:59:00Z")
    event = verifier.verify(raw, verifier.sign(raw))

    assert event.occurred_at == datetime(2024, 6, 1, 11, 59, tzinfo=timezone.utc)
