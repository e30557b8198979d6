############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# retry.py: Bounded retry with backoff for provider calls
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Bounded retry-with-backoff for transient provider errors."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from backend.app.core.errors import ExternalUnavailable
from backend.app.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Retry policy for provider calls.

    Only ExternalUnavailable (5xx, timeout, transport) is retried, and
    only for operations the caller marks idempotent. Everything else
    propagates on the first failure.
    """

    max_attempts: int = 3
    backoff: float = 1.0
    max_backoff: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff delay after the given (0-based) attempt."""
        return min(self.backoff * (2 ** attempt), self.max_backoff)

    async def run(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        idempotent: bool = True,
    ) -> T:
        attempts = max(1, self.max_attempts) if idempotent else 1

        for attempt in range(attempts):
            try:
                return await fn()
            except ExternalUnavailable as e:
                if attempt + 1 >= attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "provider_call_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

        raise ExternalUnavailable(f"{operation}: retries exhausted")
