"""API schemas for webhook ingestion and the synchronization read surface."""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..sync import (
    LedgerOutcome,
    Outcome,
    OutcomeEntry,
    OutcomeSummary,
    PlanTier,
    ReconciliationReport,
    Subscription,
    SubscriptionStatus,
    WriteDisposition,
)


class WebhookAcknowledgement(BaseModel):
    event_id: str = Field(alias="eventId")
    status: LedgerOutcome
    disposition: Optional[WriteDisposition] = None
    error_kind: Optional[str] = Field(alias="errorKind", default=None)
    error_detail: Optional[str] = Field(alias="errorDetail", default=None)
    retryable: bool = False

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: Outcome) -> "WebhookAcknowledgement":
        return cls(
            event_id=outcome.event_id,
            status=outcome.status,
            disposition=outcome.disposition,
            error_kind=outcome.error_kind,
            error_detail=outcome.error_detail,
            retryable=outcome.retryable,
        )


class SubscriptionAccessResponse(BaseModel):
    """What a tier-gating reader needs; the access decision stays with it."""

    subscription_id: str = Field(alias="subscriptionId")
    status: SubscriptionStatus
    plan_tier: PlanTier = Field(alias="planTier")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionAccessResponse":
        return cls(
            subscription_id=subscription.subscription_id,
            status=subscription.status,
            plan_tier=subscription.plan_tier,
        )


class OutcomeListResponse(BaseModel):
    summary: OutcomeSummary
    recent: List[OutcomeEntry]
    ledger: Dict[str, int] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class ReconciliationListResponse(BaseModel):
    reports: List[ReconciliationReport]
    running: bool = False
    scheduler: Dict[str, object] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "OutcomeListResponse",
    "ReconciliationListResponse",
    "SubscriptionAccessResponse",
    "WebhookAcknowledgement",
]
