"""Authentication and decoding of inbound provider webhooks."""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .errors import MalformedPayload, SignatureMismatch, StaleTimestamp
from .models import VerifiedEvent, parse_optional_datetime

SIGNATURE_SCHEME = "v1"


def compute_signature(secret: str, timestamp: int, raw_payload: bytes) -> str:
    """Hex HMAC-SHA256 over ``b"<timestamp>." + raw_payload``."""

    signed = str(timestamp).encode("utf-8") + b"." + raw_payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_signature_header(header: Optional[str]) -> Tuple[int, List[str]]:
    if not header:
        raise SignatureMismatch("Missing signature header")

    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise SignatureMismatch("Signature header timestamp is not an integer") from exc
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)

    if timestamp is None:
        raise SignatureMismatch("Signature header has no timestamp")
    if not signatures:
        raise SignatureMismatch(f"Signature header has no {SIGNATURE_SCHEME} signature")
    return timestamp, signatures


def _subscription_id_for(event_type: str, obj: dict) -> Optional[str]:
    if event_type.startswith("subscription."):
        candidate = obj.get("id")
    else:
        candidate = obj.get("subscription")
        if isinstance(candidate, dict):
            candidate = candidate.get("id")
    return str(candidate) if candidate else None


class WebhookVerifier:
    """Checks signatures and replay windows, then decodes the event body."""

    def __init__(
        self,
        secret: str,
        *,
        tolerance_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._secret = secret or ""
        self._tolerance_seconds = max(0, tolerance_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sign(self, raw_payload: bytes, *, timestamp: Optional[int] = None) -> str:
        """Build a signature header value for ``raw_payload``."""

        if not self._secret:
            raise ValueError("secret must be provided")
        ts = int(self._clock().timestamp()) if timestamp is None else timestamp
        return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(self._secret, ts, raw_payload)}"

    def verify(self, raw_payload: bytes, signature_header: Optional[str]) -> VerifiedEvent:
        if not self._secret:
            raise SignatureMismatch("Webhook secret is not configured")
        if not isinstance(raw_payload, (bytes, bytearray)):
            raise MalformedPayload("Payload must be the raw request bytes")

        timestamp, signatures = _parse_signature_header(signature_header)
        expected = compute_signature(self._secret, timestamp, bytes(raw_payload))
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise SignatureMismatch("No signature matches the expected value")

        now = self._clock().timestamp()
        if abs(now - timestamp) > self._tolerance_seconds:
            raise StaleTimestamp(
                f"Signature timestamp {timestamp} is outside the {self._tolerance_seconds}s tolerance"
            )

        return self._decode(bytes(raw_payload))

    def _decode(self, raw_payload: bytes) -> VerifiedEvent:
        try:
            body = json.loads(raw_payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedPayload(f"Payload is not valid JSON: {exc}") from exc

        if not isinstance(body, dict):
            raise MalformedPayload("Payload must be a JSON object")

        event_id = body.get("id")
        event_type = body.get("type")
        if not isinstance(event_id, str) or not event_id:
            raise MalformedPayload("Payload is missing the event id")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedPayload("Payload is missing the event type")

        try:
            occurred_at = parse_optional_datetime(body.get("created"))
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise MalformedPayload("Event creation time is not a valid timestamp") from exc
        if occurred_at is None:
            raise MalformedPayload("Payload is missing the event creation time")

        data = body.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise MalformedPayload("Payload is missing data.object")

        return VerifiedEvent(
            event_id=event_id,
            event_type=event_type,
            occurred_at=occurred_at,
            payload_object=obj,
            subscription_id=_subscription_id_for(event_type, obj),
        )


__all__ = ["SIGNATURE_SCHEME", "WebhookVerifier", "compute_signature"]
