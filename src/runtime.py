"""Wires stores, dispatchers and services together from Settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.audit.logger import AuditLogger
from src.config import Settings
from src.store.sqlite import SQLiteWebhookStore
from src.webhook.capture import CaptureService
from src.webhook.dispatcher import HttpRetryDispatcher, RetryDispatcher, SQLiteRetryQueue
from src.webhook.handlers import noop_handler
from src.webhook.pipeline import ProcessingPipeline, WorkHandler
from src.webhook.signature import SignatureVerifier
from src.webhook.triggers import BatchProcessor

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: SQLiteWebhookStore
    retry_queue: SQLiteRetryQueue
    dispatcher: RetryDispatcher
    capture: CaptureService
    pipeline: ProcessingPipeline
    processor: BatchProcessor
    verifier: SignatureVerifier
    audit_logger: AuditLogger | None = None

    def close(self) -> None:
        self.store.close()
        self.retry_queue.close()


def build_runtime(settings: Settings, handler: WorkHandler | None = None) -> Runtime:
    audit_logger = AuditLogger.from_env(settings.audit_log_path) if settings.audit_log_path else None
    store = SQLiteWebhookStore(settings.webhook_db_path)
    retry_queue = SQLiteRetryQueue(
        settings.retry_queue_db_path, max_receive_count=settings.retry_max_receive_count,
    )

    dispatcher: RetryDispatcher = retry_queue
    if settings.retry_queue_url:
        logger.info("Publishing retries to %s", settings.retry_queue_url)
        dispatcher = HttpRetryDispatcher(settings.retry_queue_url, settings.retry_queue_token)

    pipeline = ProcessingPipeline(
        store=store,
        handler=handler or noop_handler,
        dispatcher=dispatcher,
        max_retries=settings.max_retries,
        audit_logger=audit_logger,
    )
    return Runtime(
        settings=settings,
        store=store,
        retry_queue=retry_queue,
        dispatcher=dispatcher,
        capture=CaptureService(store, audit_logger),
        pipeline=pipeline,
        processor=BatchProcessor(pipeline, store),
        verifier=SignatureVerifier(settings.signing_secret, enabled=settings.signature_validation),
        audit_logger=audit_logger,
    )
