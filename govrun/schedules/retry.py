"""Timeout and bounded-backoff retry around schedule store calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from govrun.config.models import ReconcilerConfig
from govrun.errors import StoreUnavailableError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[str, int, BaseException], Any]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry decision and delay helpers for store operations."""

    max_retries: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    timeout_seconds: float = 10.0

    @classmethod
    def from_config(cls, config: ReconcilerConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay_seconds=config.retry_base_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
            timeout_seconds=config.store_timeout_seconds,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, retry_count: int) -> float:
        """Calculate bounded exponential backoff delay in seconds."""
        delay = max(0.0, float(self.base_delay_seconds)) * (2 ** max(0, int(retry_count)))
        return float(min(delay, max(0.0, float(self.max_delay_seconds))))

    async def call(
        self,
        operation: str,
        schedule_id: str,
        factory: Callable[[], Awaitable[T]],
        *,
        on_retry: RetryCallback | None = None,
        verify: Callable[[], Awaitable[bool]] | None = None,
    ) -> T | None:
        """Run ``factory()`` with a timeout, retrying transient failures.

        Timeouts count as transient. Any other exception propagates on the
        first occurrence. Exhausting retries raises :class:`StoreUnavailableError`.

        A timed-out write may still have been applied remotely. When ``verify``
        is given it is consulted after each timeout; if it reports the write as
        landed the call returns ``None`` instead of sending the write again.
        """
        last_error: BaseException | None = None
        for attempt in range(self.max_attempts):
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
            except (TransientStoreError, asyncio.TimeoutError) as exc:
                last_error = exc
                if verify is not None and isinstance(exc, asyncio.TimeoutError):
                    if await self._confirm(operation, schedule_id, verify):
                        return None
                if attempt + 1 >= self.max_attempts:
                    break
                delay = self.calculate_delay(attempt)
                logger.warning(
                    "store_retry operation=%s schedule_id=%s attempt=%d delay=%.3f error=%s",
                    operation,
                    schedule_id,
                    attempt + 1,
                    delay,
                    type(exc).__name__,
                )
                if on_retry is not None:
                    on_retry(operation, attempt + 1, exc)
                if delay > 0:
                    await asyncio.sleep(delay)
        raise StoreUnavailableError(operation, schedule_id, self.max_attempts) from last_error

    async def _confirm(
        self,
        operation: str,
        schedule_id: str,
        verify: Callable[[], Awaitable[bool]],
    ) -> bool:
        try:
            landed = await asyncio.wait_for(verify(), timeout=self.timeout_seconds)
        except (TransientStoreError, asyncio.TimeoutError) as exc:
            logger.warning(
                "store_write_unverified operation=%s schedule_id=%s error=%s",
                operation,
                schedule_id,
                type(exc).__name__,
            )
            return False
        if landed:
            logger.info("store_write_confirmed operation=%s schedule_id=%s", operation, schedule_id)
        return bool(landed)
