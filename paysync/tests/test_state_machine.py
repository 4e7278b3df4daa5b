from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

import pytest

from paysync.app.sync import (
    EventType,
    InvalidField,
    MissingField,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    UnknownEventType,
    VerifiedEvent,
    build_handler_registry,
)
from paysync.app.sync.state_machine import (
    TransitionContext,
    build_transition_context,
    resolve_handler,
    resolve_plan_tier,
    subscription_from_object,
)


def _ts(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _event(event_type: str, obj: Dict[str, object], *, occurred_at: int = 100, subscription_id: Optional[str] = "sub_1") -> VerifiedEvent:
    return VerifiedEvent(
        event_id=f"evt_{event_type}_{occurred_at}",
        event_type=event_type,
        occurred_at=_ts(occurred_at),
        payload_object=obj,
        subscription_id=subscription_id,
    )


def _existing(**overrides) -> Subscription:
    values = dict(
        subscription_id="sub_1",
        account_id="acct_1",
        customer_id="cus_1",
        plan_tier=PlanTier.PRO,
        status=SubscriptionStatus.ACTIVE,
        current_period_end=_ts(5_000),
        amount=2500,
        currency="usd",
        source_event_timestamp=_ts(50),
    )
    values.update(overrides)
    return Subscription(**values)


class FakeAccountResolver:
    def __init__(self, mapping: Dict[str, str]) -> None:
        self.mapping = mapping
        self.calls = []

    def resolve(self, customer_id: str) -> Optional[str]:
        self.calls.append(customer_id)
        return self.mapping.get(customer_id)


def test_plan_tiers_are_ordered():
    assert PlanTier.FREE < PlanTier.BASIC < PlanTier.TEAM < PlanTier.PRO < PlanTier.ENTERPRISE
    assert max([PlanTier.TEAM, PlanTier.ENTERPRISE, PlanTier.BASIC]) == PlanTier.ENTERPRISE


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("pastDue", SubscriptionStatus.PAST_DUE),
        ("incompleteExpired", SubscriptionStatus.INCOMPLETE_EXPIRED),
        ("cancelled", SubscriptionStatus.CANCELED),
        ("ACTIVE", SubscriptionStatus.ACTIVE),
    ],
)
def test_status_parsing_accepts_provider_spellings(raw, expected):
    assert SubscriptionStatus.parse(raw) == expected


def test_registry_covers_every_event_type():
    registry = build_handler_registry()

    assert set(registry) == set(EventType)
    with pytest.raises(TypeError):
        registry[EventType.INVOICE_PAID] = None  # type: ignore[index]


def test_unknown_event_type_is_a_data_error():
    with pytest.raises(UnknownEventType):
        resolve_handler(build_handler_registry(), "customer.created")


def test_snapshot_builds_full_subscription_without_fabricated_dates():
    registry = build_handler_registry()
    handler = resolve_handler(registry, "subscription.created")
    event = _event(
        "subscription.created",
        {"id": "sub_1", "status": "trialing", "customer": "cus_1", "trial_end": 900},
    )

    result = handler(None, event, TransitionContext(account_id="acct_1"))

    assert result.status == SubscriptionStatus.TRIALING
    assert result.trial_end == _ts(900)
    assert result.current_period_start is None
    assert result.current_period_end is None
    assert result.plan_tier == PlanTier.FREE
    assert result.account_id == "acct_1"
    assert result.source_event_timestamp == _ts(100)


def test_snapshot_without_status_is_missing_field():
    handler = resolve_handler(build_handler_registry(), "subscription.updated")

    with pytest.raises(MissingField):
        handler(None, _event("subscription.updated", {"id": "sub_1"}), TransitionContext())


def test_snapshot_with_unknown_status_is_invalid_field():
    handler = resolve_handler(build_handler_registry(), "subscription.updated")

    with pytest.raises(InvalidField):
        handler(None, _event("subscription.updated", {"id": "sub_1", "status": "zombie"}), TransitionContext())


@pytest.mark.parametrize(
    "raw, expected",
    [(True, True), (False, False), ("false", False), ("TRUE", True), (0, False), (None, False)],
)
def test_cancel_at_period_end_is_parsed_as_a_flag(raw, expected):
    handler = resolve_handler(build_handler_registry(), "subscription.updated")
    obj = {"id": "sub_1", "status": "active", "cancel_at_period_end": raw}

    result = handler(None, _event("subscription.updated", obj), TransitionContext())

    assert result.cancel_at_period_end is expected


def test_cancel_at_period_end_rejects_non_boolean_values():
    handler = resolve_handler(build_handler_registry(), "subscription.updated")
    obj = {"id": "sub_1", "status": "active", "cancel_at_period_end": "sometimes"}

    with pytest.raises(InvalidField):
        handler(None, _event("subscription.updated", obj), TransitionContext())


def test_canceled_subscription_accepts_newer_active_snapshot():
    handler = resolve_handler(build_handler_registry(), "subscription.updated")
    current = _existing(status=SubscriptionStatus.CANCELED)

    result = handler(current, _event("subscription.updated", {"id": "sub_1", "status": "active"}, occurred_at=200), TransitionContext())

    assert result.status == SubscriptionStatus.ACTIVE


def test_deleted_paused_and_resumed_override_status():
    registry = build_handler_registry()
    current = _existing()

    deleted = resolve_handler(registry, "subscription.deleted")(
        current, _event("subscription.deleted", {"id": "sub_1", "status": "active"}), TransitionContext()
    )
    paused = resolve_handler(registry, "subscription.paused")(
        current, _event("subscription.paused", {"id": "sub_1"}), TransitionContext()
    )
    resumed = resolve_handler(registry, "subscription.resumed")(
        current, _event("subscription.resumed", {"id": "sub_1"}), TransitionContext()
    )

    assert deleted.status == SubscriptionStatus.CANCELED
    assert paused.status == SubscriptionStatus.PAUSED
    assert resumed.status == SubscriptionStatus.ACTIVE


def test_invoice_payment_failed_keeps_existing_fields():
    handler = resolve_handler(build_handler_registry(), "invoice.payment_failed")
    current = _existing()

    result = handler(current, _event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}), TransitionContext())

    assert result.status == SubscriptionStatus.PAST_DUE
    assert result.plan_tier == PlanTier.PRO
    assert result.current_period_end == current.current_period_end
    assert result.amount == 2500
    assert result.account_id == "acct_1"


def test_invoice_paid_for_unknown_subscription_requires_embedded_object():
    handler = resolve_handler(build_handler_registry(), "invoice.paid")

    with pytest.raises(MissingField):
        handler(None, _event("invoice.paid", {"id": "in_1", "subscription": "sub_1"}), TransitionContext())

    embedded = {"id": "in_1", "subscription": {"id": "sub_1", "status": "past_due", "customer": "cus_9"}}
    result = handler(None, _event("invoice.paid", embedded), TransitionContext())
    assert result.status == SubscriptionStatus.ACTIVE
    assert result.customer_id == "cus_9"


def test_plan_tier_resolution_order():
    context = TransitionContext(price_tiers={"price_team": PlanTier.TEAM})

    assert resolve_plan_tier({"plan_tier": "enterprise", "plan": {"id": "price_team"}}, context, None) == PlanTier.ENTERPRISE
    assert resolve_plan_tier({"metadata": {"plan_tier": "basic"}}, context, None) == PlanTier.BASIC
    assert resolve_plan_tier({"items": {"data": [{"price": {"id": "price_team"}}]}}, context, None) == PlanTier.TEAM
    assert resolve_plan_tier({"plan": {"id": "price_unknown"}}, context, _existing()) == PlanTier.PRO
    assert resolve_plan_tier({}, context, None) == PlanTier.FREE


def test_amount_and_currency_are_passed_through_opaquely():
    obj = {
        "id": "sub_1",
        "status": "active",
        "items": {"data": [{"price": {"id": "p", "unit_amount": 1999, "currency": "jpy", "recurring": {"interval": "year"}}}]},
    }

    result = subscription_from_object(obj, subscription_id="sub_1", source_timestamp=_ts(10), context=TransitionContext())

    assert result.amount == 1999
    assert result.currency == "jpy"
    assert result.billing_interval == "year"


def test_transition_context_prefers_metadata_over_resolver():
    resolver = FakeAccountResolver({"cus_1": "acct_from_db"})

    hinted = build_transition_context({"customer": "cus_1", "metadata": {"account_id": "acct_meta"}}, account_resolver=resolver)
    looked_up = build_transition_context({"customer": {"id": "cus_1"}}, account_resolver=resolver)

    assert hinted.account_id == "acct_meta"
    assert looked_up.account_id == "acct_from_db"
    assert resolver.calls == ["cus_1"]
