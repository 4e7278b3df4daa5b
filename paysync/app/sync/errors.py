"""Error taxonomy shared by the synchronization components."""
from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Dict, Optional


@dataclass(eq=False)
class SyncError(Exception):
    """Base error carrying a stable ``kind`` tag and retry eligibility."""

    message: str

    kind: ClassVar[str] = "sync_error"
    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, object]:
        return {"error": self.kind, "message": self.message, "retryable": self.retryable}


class VerificationError(SyncError):
    """Inbound event could not be authenticated or decoded. Never retried."""

    kind = "verification_failed"


class SignatureMismatch(VerificationError):
    kind = "signature_mismatch"


class MalformedPayload(VerificationError):
    kind = "malformed_payload"


class StaleTimestamp(VerificationError):
    kind = "stale_timestamp"


class TransientSyncError(SyncError):
    """Infrastructure failure; the same work may succeed later."""

    kind = "transient"
    retryable = True


class StoreUnavailable(TransientSyncError):
    kind = "store_unavailable"


class ProviderUnavailable(TransientSyncError):
    kind = "provider_unavailable"


@dataclass(eq=False)
class ProviderRateLimited(TransientSyncError):
    retry_after: Optional[float] = None

    kind: ClassVar[str] = "provider_rate_limited"


class DeadlineExceeded(TransientSyncError):
    kind = "deadline_exceeded"


class ReconciliationInProgress(TransientSyncError):
    kind = "reconciliation_in_progress"


class DataError(SyncError):
    """Event content cannot be applied; retrying would fail the same way."""

    kind = "data_error"


class UnknownEventType(DataError):
    kind = "unknown_event_type"


class MissingField(DataError):
    kind = "missing_field"


class InvalidField(DataError):
    kind = "invalid_field"


__all__ = [
    "DataError",
    "DeadlineExceeded",
    "InvalidField",
    "MalformedPayload",
    "MissingField",
    "ProviderRateLimited",
    "ProviderUnavailable",
    "ReconciliationInProgress",
    "SignatureMismatch",
    "StaleTimestamp",
    "StoreUnavailable",
    "SyncError",
    "TransientSyncError",
    "UnknownEventType",
    "VerificationError",
]
