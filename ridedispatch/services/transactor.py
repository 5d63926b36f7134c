"""
Transactor -- retry-with-backoff wrapper around a store's transaction attempt.

Each attempt runs under ``asyncio.wait_for`` with the configured timeout.
``WriteConflict`` and timeouts trigger a retry after an exponential backoff
with full jitter; exhausting the retries raises ``TransientStoreFailure``.
Every other exception (including all ``DispatchError`` subclasses raised
by the unit of work) propagates on the first attempt: a lost precondition
is not a conflict and retrying it would not help.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from ridedispatch.config import settings
from ridedispatch.domain.errors import TransientStoreFailure, WriteConflict
from ridedispatch.domain.ports import DispatchStore, Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Transactor:
    def __init__(
        self,
        store: DispatchStore,
        *,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
    ):
        self.store = store
        self.timeout = (
            settings.transaction_timeout_seconds
            if timeout_seconds is None
            else timeout_seconds
        )
        self.max_retries = (
            settings.transaction_max_retries if max_retries is None else max_retries
        )
        self.backoff_base = (
            settings.transaction_backoff_base_seconds
            if backoff_base_seconds is None
            else backoff_base_seconds
        )
        self.backoff_max = (
            settings.transaction_backoff_max_seconds
            if backoff_max_seconds is None
            else backoff_max_seconds
        )

    def backoff(self, attempt: int) -> float:
        """Full-jitter exponential backoff for retry number *attempt* (0-based)."""
        ceiling = min(self.backoff_max, self.backoff_base * (2 ** attempt))
        return random.uniform(0, ceiling)

    async def run(self, work: Callable[[Transaction], Awaitable[T]]) -> T:
        last_reason = "conflict"
        for attempt in range(self.max_retries + 1):
            try:
                return await asyncio.wait_for(
                    self.store.attempt(work), timeout=self.timeout
                )
            except WriteConflict:
                last_reason = "conflict"
            except asyncio.TimeoutError:
                last_reason = "timeout"

            if attempt < self.max_retries:
                delay = self.backoff(attempt)
                logger.warning(
                    "Transaction %s (attempt %d/%d), retrying in %.3fs",
                    last_reason,
                    attempt + 1,
                    self.max_retries + 1,
                    delay,
                )
                await asyncio.sleep(delay)

        raise TransientStoreFailure(
            f"Transaction failed after {self.max_retries + 1} attempts "
            f"(last: {last_reason})"
        )
