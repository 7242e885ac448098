"""FastAPI application exposing capture and processing endpoints."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.audit.logger import AuditLogger
from src.config import Settings
from src.models import WEBHOOK_SORT_KEY, AuditEventType, RiskLevel, WebhookKey
from src.runtime import build_runtime
from src.store.base import WebhookStore
from src.webhook.capture import CaptureResult, CaptureService
from src.webhook.errors import StorageError
from src.webhook.models import BatchResult, ProcessingTrigger, RetryDelivery
from src.webhook.signature import SignatureVerifier
from src.webhook.triggers import BatchProcessor

logger = logging.getLogger(__name__)

Lifespan = Callable[[FastAPI], AbstractAsyncContextManager[None]]


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    runtime = build_runtime(Settings.from_env())

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        runtime.close()

    return create_app(
        store=runtime.store,
        capture=runtime.capture,
        processor=runtime.processor,
        verifier=runtime.verifier,
        audit_logger=runtime.audit_logger,
        lifespan=lifespan,
    )


def create_app(
    store: WebhookStore,
    capture: CaptureService,
    processor: BatchProcessor,
    verifier: SignatureVerifier | None = None,
    audit_logger: AuditLogger | None = None,
    lifespan: Lifespan | None = None,
) -> FastAPI:
    """Create the webhook app.

    Capture responds 2xx for accepted and duplicate webhooks so providers stop
    retrying, and 5xx only when storage failed and a redelivery may succeed.
    """
    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)

    @app.exception_handler(StorageError)
    async def storage_error(_request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage failure: %s", exc)
        return JSONResponse({"error": "Storage unavailable"}, status_code=503)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhooks/{origin}")
    async def capture_webhook(request: Request, origin: str) -> JSONResponse:
        body = await request.body()
        if not body:
            return JSONResponse({"accepted": False, "reason": "Empty body"}, status_code=400)

        if verifier and not verifier.verify(dict(request.headers), body):
            if audit_logger:
                audit_logger.record(
                    AuditEventType.SIGNATURE_FAILURE, None,
                    action="capture", result="failure",
                    risk_level=RiskLevel.HIGH, origin=origin,
                    source_ip=request.client.host if request.client else None,
                )
            return JSONResponse(
                {"accepted": False, "reason": "Invalid Webhook Signature"}, status_code=401,
            )

        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return JSONResponse({"accepted": False, "reason": "Invalid JSON"}, status_code=400)

        outcome = await capture.capture(origin, payload)
        content: dict[str, object] = {"accepted": outcome.accepted}
        if outcome.reason:
            content["reason"] = outcome.reason

        if outcome.result is CaptureResult.REJECTED:
            status_code = 503 if outcome.retryable else 400
        else:
            status_code = 200
        return JSONResponse(content, status_code=status_code)

    @app.post("/process")
    async def process(triggers: list[ProcessingTrigger]) -> BatchResult:
        return await processor.process_triggers(triggers)

    @app.post("/retries")
    async def retries(deliveries: list[RetryDelivery]) -> BatchResult:
        return await processor.process_retries(deliveries)

    @app.get("/status")
    async def status(partition_key: str, sort_key: str = WEBHOOK_SORT_KEY) -> JSONResponse:
        key = WebhookKey(partition_key=partition_key, sort_key=sort_key)
        record = await store.get_status(key)
        if record is None:
            return JSONResponse({"error": f"Webhook not found: {key}"}, status_code=404)
        return JSONResponse(record.model_dump(mode="json"))

    return app
