"""Business handlers for processed webhooks."""

from __future__ import annotations

import asyncio
import logging
import random

from src.models import WebhookRecord
from src.webhook.errors import WorkError

logger = logging.getLogger(__name__)


async def noop_handler(record: WebhookRecord) -> None:
    logger.debug("No handler configured for %s %s", record.origin.value, record.event_type)


class SimulatedWork:
    """Handler that sleeps and fails at random, for demos and load tests.

    Args:
        error_rate: Probability in [0, 1] that a call raises WorkError.
        base_delay_ms: Minimum simulated latency.
        jitter_ms: Extra random latency added to ``base_delay_ms``.
        rng: Random source, injectable for deterministic tests.
    """

    def __init__(
        self,
        error_rate: float = 0.2,
        base_delay_ms: int = 100,
        jitter_ms: int = 100,
        rng: random.Random | None = None,
    ) -> None:
        if not 0.0 <= error_rate <= 1.0:
            raise ValueError("error_rate must be between 0 and 1")
        self._error_rate = error_rate
        self._base_delay_ms = base_delay_ms
        self._jitter_ms = jitter_ms
        self._rng = rng or random.Random()

    async def __call__(self, record: WebhookRecord) -> None:
        delay = self._base_delay_ms + self._rng.randint(0, self._jitter_ms)
        await asyncio.sleep(delay / 1000)
        logger.debug("Simulated processing of %s with a %dms delay", record.key, delay)

        if self._rng.random() < self._error_rate:
            raise WorkError(f"failed to process webhook {record.key}")
