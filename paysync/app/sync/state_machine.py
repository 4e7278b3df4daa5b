"""Event-driven subscription state transitions.

Every supported event type maps to a pure function that receives the stored
subscription (or ``None`` on first sight), the verified event and a
:class:`TransitionContext`, and returns the next full subscription value.
Transitions are not graph-constrained: the provider is the source of truth
and the ordering guard in the store is the only gate. A ``canceled``
subscription therefore accepts a newer ``active`` snapshot.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .errors import InvalidField, MissingField, UnknownEventType
from .models import (
    EventType,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    VerifiedEvent,
    parse_optional_datetime,
)


@dataclass(frozen=True)
class TransitionContext:
    """Values resolved outside the row lock and handed to handlers."""

    account_id: Optional[str] = None
    price_tiers: Mapping[str, PlanTier] = field(default_factory=dict)


EventHandler = Callable[[Optional[Subscription], VerifiedEvent, TransitionContext], Subscription]
HandlerRegistry = Mapping[EventType, EventHandler]


class AccountResolver(Protocol):
    """Maps a provider billing-customer id to the local account id."""

    def resolve(self, customer_id: str) -> Optional[str]:
        ...


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_item_price(obj: Mapping[str, Any]) -> Dict[str, Any]:
    items = _as_dict(obj.get("items")).get("data")
    if isinstance(items, list) and items:
        return _as_dict(_as_dict(items[0]).get("price"))
    return {}


def customer_id_of(obj: Mapping[str, Any]) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return str(customer) if customer else None


def account_hint_of(obj: Mapping[str, Any]) -> Optional[str]:
    """Account id carried in the provider object's metadata, if any."""

    account_id = _as_dict(obj.get("metadata")).get("account_id")
    return str(account_id) if account_id else None


def build_transition_context(
    obj: Mapping[str, Any],
    *,
    account_resolver: Optional[AccountResolver] = None,
    price_tiers: Optional[Mapping[str, PlanTier]] = None,
) -> TransitionContext:
    """Resolve the owning account before any row lock is taken."""

    account_id = account_hint_of(obj)
    if account_id is None and account_resolver is not None:
        customer_id = customer_id_of(obj)
        if customer_id:
            account_id = account_resolver.resolve(customer_id)
    return TransitionContext(account_id=account_id, price_tiers=dict(price_tiers or {}))


def _parse_tier(value: Any) -> PlanTier:
    try:
        return PlanTier(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidField(f"Unknown plan tier {value!r}") from exc


def resolve_plan_tier(
    obj: Mapping[str, Any],
    context: TransitionContext,
    current: Optional[Subscription],
) -> PlanTier:
    plan = _as_dict(obj.get("plan"))
    explicit = obj.get("plan_tier") or plan.get("tier") or _as_dict(obj.get("metadata")).get("plan_tier")
    if explicit:
        return _parse_tier(explicit)

    price_ids = (plan.get("id"), _as_dict(obj.get("price")).get("id"), _first_item_price(obj).get("id"))
    for price_id in price_ids:
        if price_id and str(price_id) in context.price_tiers:
            return context.price_tiers[str(price_id)]

    if current is not None:
        return current.plan_tier
    return PlanTier.FREE


def _optional_timestamp(obj: Mapping[str, Any], key: str) -> Optional[datetime]:
    try:
        return parse_optional_datetime(obj.get(key))
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise InvalidField(f"{key} is not a valid timestamp") from exc


def _optional_amount(obj: Mapping[str, Any]) -> Optional[int]:
    plan = _as_dict(obj.get("plan"))
    raw = obj.get("amount")
    if raw is None:
        raw = plan.get("amount")
    if raw is None:
        raw = _first_item_price(obj).get("unit_amount")
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise InvalidField("amount must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidField("amount must be an integer") from exc


def _flag(obj: Mapping[str, Any], key: str) -> bool:
    raw = obj.get(key)
    if raw is None:
        return False
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no", ""}:
            return False
    elif isinstance(raw, int) and raw in (0, 1):
        return bool(raw)
    raise InvalidField(f"{key} must be a boolean")


def _optional_text(*values: Any) -> Optional[str]:
    for value in values:
        if value not in (None, ""):
            return str(value)
    return None


def subscription_from_object(
    obj: Mapping[str, Any],
    *,
    subscription_id: Optional[str],
    source_timestamp: datetime,
    context: TransitionContext,
    current: Optional[Subscription] = None,
    status_override: Optional[SubscriptionStatus] = None,
    default_status: Optional[SubscriptionStatus] = None,
) -> Subscription:
    """Build a full subscription snapshot from a provider subscription object.

    Period and trial timestamps absent from ``obj`` are stored as ``None``.
    """

    if not subscription_id:
        raise MissingField("subscription id is missing from the provider object")

    if status_override is not None:
        status = status_override
    else:
        raw_status = obj.get("status")
        if raw_status in (None, ""):
            if default_status is None:
                raise MissingField(f"status is missing for subscription {subscription_id}")
            status = default_status
        else:
            try:
                status = SubscriptionStatus.parse(raw_status)
            except ValueError as exc:
                raise InvalidField(f"Unknown subscription status {raw_status!r}") from exc

    plan = _as_dict(obj.get("plan"))
    price = _first_item_price(obj)
    recurring = _as_dict(price.get("recurring"))
    return Subscription(
        subscription_id=subscription_id,
        account_id=context.account_id or (current.account_id if current else None),
        customer_id=customer_id_of(obj) or (current.customer_id if current else None),
        plan_tier=resolve_plan_tier(obj, context, current),
        status=status,
        current_period_start=_optional_timestamp(obj, "current_period_start"),
        current_period_end=_optional_timestamp(obj, "current_period_end"),
        trial_end=_optional_timestamp(obj, "trial_end"),
        cancel_at_period_end=_flag(obj, "cancel_at_period_end"),
        amount=_optional_amount(obj),
        currency=_optional_text(obj.get("currency"), plan.get("currency"), price.get("currency")),
        billing_interval=_optional_text(
            obj.get("billing_interval"), obj.get("interval"), plan.get("interval"), recurring.get("interval")
        ),
        source_event_timestamp=source_timestamp,
        updated_at=datetime.now(timezone.utc),
    )


def apply_subscription_snapshot(
    current: Optional[Subscription], event: VerifiedEvent, context: TransitionContext
) -> Subscription:
    return subscription_from_object(
        event.payload_object,
        subscription_id=event.subscription_id,
        source_timestamp=event.occurred_at,
        context=context,
        current=current,
    )


def apply_subscription_deleted(
    current: Optional[Subscription], event: VerifiedEvent, context: TransitionContext
) -> Subscription:
    return subscription_from_object(
        event.payload_object,
        subscription_id=event.subscription_id,
        source_timestamp=event.occurred_at,
        context=context,
        current=current,
        status_override=SubscriptionStatus.CANCELED,
    )


def apply_subscription_paused(
    current: Optional[Subscription], event: VerifiedEvent, context: TransitionContext
) -> Subscription:
    return subscription_from_object(
        event.payload_object,
        subscription_id=event.subscription_id,
        source_timestamp=event.occurred_at,
        context=context,
        current=current,
        status_override=SubscriptionStatus.PAUSED,
    )


def apply_subscription_resumed(
    current: Optional[Subscription], event: VerifiedEvent, context: TransitionContext
) -> Subscription:
    return subscription_from_object(
        event.payload_object,
        subscription_id=event.subscription_id,
        source_timestamp=event.occurred_at,
        context=context,
        current=current,
        default_status=SubscriptionStatus.ACTIVE,
    )


def _apply_invoice_status(
    current: Optional[Subscription],
    event: VerifiedEvent,
    context: TransitionContext,
    status: SubscriptionStatus,
) -> Subscription:
    if current is None:
        embedded = event.payload_object.get("subscription")
        if not isinstance(embedded, dict):
            raise MissingField(
                f"invoice event {event.event_id} references unknown subscription {event.subscription_id}"
            )
        return subscription_from_object(
            embedded,
            subscription_id=event.subscription_id,
            source_timestamp=event.occurred_at,
            context=context,
            status_override=status,
        )

    return current.model_copy(
        update={
            "status": status,
            "account_id": context.account_id or current.account_id,
            "source_event_timestamp": event.occurred_at,
            "updated_at": datetime.now(timezone.utc),
        }
    )


def apply_invoice_paid(
    current: Optional[Subscription], event: VerifiedEvent, context: TransitionContext
) -> Subscription:
    return _apply_invoice_status(current, event, context, SubscriptionStatus.ACTIVE)


def apply_invoice_payment_failed(
    current: Optional[Subscription], event: VerifiedEvent, context: TransitionContext
) -> Subscription:
    return _apply_invoice_status(current, event, context, SubscriptionStatus.PAST_DUE)


def build_handler_registry() -> HandlerRegistry:
    """Build the immutable event-type to handler mapping."""

    return MappingProxyType(
        {
            EventType.SUBSCRIPTION_CREATED: apply_subscription_snapshot,
            EventType.SUBSCRIPTION_UPDATED: apply_subscription_snapshot,
            EventType.SUBSCRIPTION_TRIAL_WILL_END: apply_subscription_snapshot,
            EventType.SUBSCRIPTION_DELETED: apply_subscription_deleted,
            EventType.SUBSCRIPTION_PAUSED: apply_subscription_paused,
            EventType.SUBSCRIPTION_RESUMED: apply_subscription_resumed,
            EventType.INVOICE_PAID: apply_invoice_paid,
            EventType.INVOICE_PAYMENT_FAILED: apply_invoice_payment_failed,
        }
    )


def resolve_handler(registry: HandlerRegistry, event_type: str) -> EventHandler:
    try:
        handler = registry.get(EventType(event_type))
    except ValueError:
        handler = None
    if handler is None:
        raise UnknownEventType(f"No handler registered for event type {event_type!r}")
    return handler


__all__ = [
    "AccountResolver",
    "EventHandler",
    "HandlerRegistry",
    "TransitionContext",
    "account_hint_of",
    "apply_invoice_paid",
    "apply_invoice_payment_failed",
    "apply_subscription_deleted",
    "apply_subscription_paused",
    "apply_subscription_resumed",
    "apply_subscription_snapshot",
    "build_handler_registry",
    "build_transition_context",
    "customer_id_of",
    "resolve_handler",
    "resolve_plan_tier",
    "subscription_from_object",
]
