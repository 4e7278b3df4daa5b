"""Inbound billing provider webhook endpoint."""
from __future__ import annotations

import asyncio
import logging
import time

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ..schemas.sync import WebhookAcknowledgement
from ..services.sync import get_sync_engine
from ..sync import Outcome, VerificationError

logger = logging.getLogger("billing.webhooks")

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _acknowledge(outcome: Outcome) -> JSONResponse:
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE if outcome.should_retry else status.HTTP_200_OK
    body = WebhookAcknowledgement.from_outcome(outcome).model_dump(mode="json", by_alias=True)
    return JSONResponse(status_code=status_code, content=body)


@router.post("/webhook", response_model=WebhookAcknowledgement)
async def receive_webhook(request: Request) -> JSONResponse:
    engine = get_sync_engine()
    raw_payload = await request.body()
    signature_header = request.headers.get(engine.config.signature_header)

    try:
        event = engine.verifier.verify(raw_payload, signature_header)
    except VerificationError as exc:
        logger.warning("Rejected billing webhook: %s", exc.message, extra={"error_kind": exc.kind})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail()) from exc

    budget = engine.config.webhook_deadline_seconds
    deadline = time.monotonic() + budget
    loop = asyncio.get_running_loop()
    try:
        # Executor futures stop waiting on timeout; the worker thread still
        # finishes and completes the ledger row on its own.
        outcome = await asyncio.wait_for(
            loop.run_in_executor(None, lambda: engine.processor.process(event, deadline=deadline)),
            timeout=budget,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Billing webhook %s exceeded its %.1fs deadline",
            event.event_id,
            budget,
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        outcome = Outcome.pending(
            event.event_id,
            kind="deadline_exceeded",
            detail=f"processing did not finish within {budget}s",
        )
    return _acknowledge(outcome)


__all__ = ["router"]
