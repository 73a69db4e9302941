"""Concurrency-capped, retrying gateway in front of the model transport."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from vibecheck_orchestrator.errors import TransportError
from vibecheck_orchestrator.llm.transport import GenerateRequest, GenerationResult, ModelTransport

logger = logging.getLogger(__name__)


class ModelGateway:
    """Admit at most ``concurrency`` calls at once and retry each with exponential backoff.

    Waiting callers are admitted in arrival order. A slot is held only while an
    attempt is in flight; a retrying call sleeps outside the gate and queues again.
    """

    def __init__(
        self,
        transport: ModelTransport,
        *,
        concurrency: int = 8,
        timeout_s: float = 60.0,
        max_attempts: int = 3,
        base_delay_s: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.concurrency = max(1, concurrency)
        self.timeout_s = timeout_s
        self.max_attempts = max(1, max_attempts)
        self.base_delay_s = max(0.0, base_delay_s)
        self._sleep = sleep
        self._slots = asyncio.Semaphore(self.concurrency)

    async def generate(self, payload: GenerateRequest) -> GenerationResult:
        last_error: TransportError | None = None
        for attempt in range(self.max_attempts):
            try:
                async with self._slots:
                    return await asyncio.wait_for(
                        self.transport.generate(payload), timeout=self.timeout_s
                    )
            except TimeoutError as exc:
                last_error = TransportError(f"Request timed out after {self.timeout_s:.1f}s")
                last_error.__cause__ = exc
            except TransportError as exc:
                last_error = exc
            except Exception as exc:  # noqa: BLE001
                last_error = TransportError(str(exc) or exc.__class__.__name__)
                last_error.__cause__ = exc

            logger.warning(
                "Model request failed attempt=%d/%d model=%s reason=%s",
                attempt + 1,
                self.max_attempts,
                payload.model,
                last_error,
            )
            if attempt < self.max_attempts - 1:
                await self._sleep(self.base_delay_s * 2**attempt)

        if last_error is None:
            raise TransportError("Model request failed with unknown error")
        raise last_error
