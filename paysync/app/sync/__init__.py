"""Subscription state synchronization between the billing provider and local storage."""

from .errors import (
    DataError,
    DeadlineExceeded,
    InvalidField,
    MalformedPayload,
    MissingField,
    ProviderRateLimited,
    ProviderUnavailable,
    ReconciliationInProgress,
    SignatureMismatch,
    StaleTimestamp,
    StoreUnavailable,
    SyncError,
    TransientSyncError,
    UnknownEventType,
    VerificationError,
)
from .ledger import IdempotencyLedger, InMemoryIdempotencyLedger
from .models import (
    EventType,
    IdempotencyRecord,
    LedgerOutcome,
    Outcome,
    OutcomeSummary,
    PlanTier,
    ReconciliationError,
    ReconciliationReport,
    Subscription,
    SubscriptionStatus,
    VerifiedEvent,
    WriteDisposition,
    WriteResult,
)
from .outcome_log import OutcomeEntry, OutcomeLog
from .processor import EventProcessor
from .provider import HttpProviderClient, ProviderClient, ProviderPage
from .reconciliation import ReconciliationJob
from .state_machine import AccountResolver, TransitionContext, build_handler_registry
from .store import InMemorySubscriptionStore, SubscriptionStore
from .verifier import WebhookVerifier

__all__ = [
    "AccountResolver",
    "DataError",
    "DeadlineExceeded",
    "EventProcessor",
    "EventType",
    "HttpProviderClient",
    "IdempotencyLedger",
    "IdempotencyRecord",
    "InMemoryIdempotencyLedger",
    "InMemorySubscriptionStore",
    "InvalidField",
    "LedgerOutcome",
    "MalformedPayload",
    "MissingField",
    "Outcome",
    "OutcomeEntry",
    "OutcomeLog",
    "OutcomeSummary",
    "PlanTier",
    "ProviderClient",
    "ProviderPage",
    "ProviderRateLimited",
    "ProviderUnavailable",
    "ReconciliationError",
    "ReconciliationInProgress",
    "ReconciliationJob",
    "ReconciliationReport",
    "SignatureMismatch",
    "StaleTimestamp",
    "StoreUnavailable",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionStore",
    "SyncError",
    "TransientSyncError",
    "TransitionContext",
    "UnknownEventType",
    "VerificationError",
    "VerifiedEvent",
    "WebhookVerifier",
    "WriteDisposition",
    "WriteResult",
    "build_handler_registry",
]
