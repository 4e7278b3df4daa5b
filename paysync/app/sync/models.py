"""Domain models for the subscription synchronization engine."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class PlanTier(str, Enum):
    """Ordered plan tiers; later members rank higher."""

    FREE = "free"
    BASIC = "basic"
    TEAM = "team"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return list(PlanTier).index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank >= other.rank


class SubscriptionStatus(str, Enum):
    """Closed set of provider subscription states."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"

    @classmethod
    def parse(cls, value: object) -> "SubscriptionStatus":
        """Accept snake_case, camelCase and the British ``cancelled`` spelling."""

        if isinstance(value, SubscriptionStatus):
            return value
        text = str(value).strip()
        if text not in (text.lower(), text.upper()):
            text = _CAMEL_BOUNDARY.sub("_", text)
        normalized = text.lower().replace("-", "_")
        if normalized == "cancelled":
            normalized = cls.CANCELED.value
        return cls(normalized)


class EventType(str, Enum):
    """Provider event types with a registered handler."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_TRIAL_WILL_END = "subscription.trial_will_end"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class LedgerOutcome(str, Enum):
    """Processing state stored on an idempotency record."""

    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WriteDisposition(str, Enum):
    """Result of the ordering-guarded write path."""

    APPLIED = "applied"
    SKIPPED_STALE = "skipped_stale"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class Subscription(BaseModel):
    """Locally stored copy of one provider billing relationship."""

    subscription_id: str
    account_id: Optional[str] = None
    customer_id: Optional[str] = None
    plan_tier: PlanTier = PlanTier.FREE
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    amount: Optional[int] = None
    currency: Optional[str] = None
    billing_interval: Optional[str] = None
    source_event_timestamp: datetime
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("source_event_timestamp", "updated_at")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def material_fields(self) -> Tuple[Any, ...]:
        """Fields whose divergence counts as drift during reconciliation."""

        return (
            self.account_id,
            self.customer_id,
            self.plan_tier,
            self.status,
            self.current_period_start,
            self.current_period_end,
            self.trial_end,
            self.cancel_at_period_end,
            self.amount,
            self.currency,
            self.billing_interval,
        )

    def diverges_from(self, other: "Subscription") -> bool:
        return self.material_fields() != other.material_fields()


class VerifiedEvent(BaseModel):
    """Authenticated, decoded provider event."""

    event_id: str
    event_type: str
    occurred_at: datetime
    payload_object: Dict[str, Any] = Field(default_factory=dict)
    subscription_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class IdempotencyRecord(BaseModel):
    """Durable processing outcome of a single provider event."""

    event_id: str
    event_type: str
    received_at: datetime
    outcome: LedgerOutcome = LedgerOutcome.PROCESSING
    disposition: Optional[WriteDisposition] = None
    subscription_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    retryable: bool = False
    processing_duration_ms: Optional[int] = None
    lease_expires_at: Optional[datetime] = None
    attempts: int = 1
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_terminal(self) -> bool:
        if self.outcome == LedgerOutcome.SUCCEEDED:
            return True
        return self.outcome == LedgerOutcome.FAILED and not self.retryable

    def is_reclaimable(self, now: datetime) -> bool:
        if self.outcome == LedgerOutcome.FAILED:
            return self.retryable
        if self.outcome == LedgerOutcome.PROCESSING:
            return self.lease_expires_at is not None and self.lease_expires_at <= now
        return False


class Outcome(BaseModel):
    """Structured processing result handed back to the webhook layer."""

    event_id: str
    status: LedgerOutcome
    disposition: Optional[WriteDisposition] = None
    subscription_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    retryable: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def from_record(cls, record: IdempotencyRecord) -> "Outcome":
        return cls(
            event_id=record.event_id,
            status=record.outcome,
            disposition=record.disposition,
            subscription_id=record.subscription_id,
            error_kind=record.error_kind,
            error_detail=record.error_detail,
            retryable=record.retryable if record.outcome == LedgerOutcome.FAILED else False,
        )

    @classmethod
    def pending(cls, event_id: str, *, kind: str, detail: str) -> "Outcome":
        """Transient outcome for an event whose ledger row is still ``processing``."""

        return cls(
            event_id=event_id,
            status=LedgerOutcome.PROCESSING,
            error_kind=kind,
            error_detail=detail,
            retryable=True,
        )

    @property
    def is_success(self) -> bool:
        return self.status == LedgerOutcome.SUCCEEDED

    @property
    def should_retry(self) -> bool:
        """``True`` when the provider should redeliver the event."""

        return not self.is_success and self.retryable


class WriteResult(BaseModel):
    """Explicit result of :meth:`SubscriptionStore.apply`."""

    disposition: WriteDisposition
    subscription: Optional[Subscription] = None
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    retryable: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def failed(self) -> bool:
        return self.disposition == WriteDisposition.FAILED


class ReconciliationError(BaseModel):
    """Per-record or per-page failure captured during a reconciliation pass."""

    kind: str
    detail: str
    subscription_id: Optional[str] = None
    page: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconciliationReport(BaseModel):
    """Summary of one reconciliation pass."""

    started_at: datetime
    finished_at: datetime
    duration_ms: int = Field(ge=0)
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_stale: int = 0
    flagged: int = 0
    flagged_ids: List[str] = Field(default_factory=list)
    pages_fetched: int = 0
    complete: bool = True
    cancelled: bool = False
    errors: List[ReconciliationError] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def partial(self) -> bool:
        return not self.complete


class OutcomeSummary(BaseModel):
    """Aggregated counters exposed to monitoring."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    applied: int = 0
    skipped_stale: int = 0
    duplicates: int = 0
    in_progress: int = 0
    avg_latency_ms: float = 0.0
    max_latency_ms: int = 0
    last_reconciliation: Optional[ReconciliationReport] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


def parse_optional_datetime(value: object) -> Optional[datetime]:
    """Coerce provider timestamps (unix seconds, ISO-8601, datetime) to aware UTC.

    Absent or empty values stay ``None``; no placeholder date is ever produced.
    """

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise TypeError("Unsupported datetime value")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(text), tz=timezone.utc)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported datetime value")


__all__ = [
    "EventType",
    "IdempotencyRecord",
    "LedgerOutcome",
    "Outcome",
    "OutcomeSummary",
    "PlanTier",
    "ReconciliationError",
    "ReconciliationReport",
    "Subscription",
    "SubscriptionStatus",
    "VerifiedEvent",
    "WriteDisposition",
    "WriteResult",
    "parse_optional_datetime",
]
