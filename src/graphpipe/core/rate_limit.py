"""Sliding-window request budget shared by every caller of one tenant."""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Sequence, TypeVar

from .models import MAX_BATCH_ITEMS, RateLimitStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

WINDOW_SECONDS = 20.0
MAX_TOTAL_REQUESTS = 1000
MAX_WRITE_REQUESTS = 100

UTILIZATION_THRESHOLD = 0.8
BATCH_HEADROOM = 0.8
REJECTION_MEMORY_SECONDS = 60.0
REJECTION_PENALTY_SECONDS = 2.0
MAX_PREEMPTIVE_DELAY = 10.0

BASE_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 32.0
JITTER = 0.2


@dataclass(slots=True)
class RateWindow:
    """Rolling log of request instants checked against a ceiling."""

    ceiling: int
    length: float = WINDOW_SECONDS
    stamps: Deque[float] = field(default_factory=deque)

    def purge(self, now: float) -> None:
        cutoff = now - self.length
        while self.stamps and self.stamps[0] < cutoff:
            self.stamps.popleft()

    def count(self, now: float) -> int:
        self.purge(now)
        return len(self.stamps)

    def remaining(self, now: float) -> int:
        return max(0, self.ceiling - self.count(now))

    def utilization(self, now: float) -> float:
        return self.count(now) / self.ceiling

    def append(self, now: float) -> None:
        self.stamps.append(now)


class RateBudget:
    """Tracks the total and write windows and advises callers.

    All counter reads and writes happen under one lock so two concurrent
    admission checks can never both pass on the last free slot. The lock is
    never held while a caller sleeps; every method returns advice and the
    caller does the waiting.
    """

    def __init__(
        self,
        *,
        max_total: int = MAX_TOTAL_REQUESTS,
        max_write: int = MAX_WRITE_REQUESTS,
        window: float = WINDOW_SECONDS,
        base_delay: float = BASE_RETRY_DELAY,
        max_delay: float = MAX_RETRY_DELAY,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._total = RateWindow(ceiling=max_total, length=window)
        self._write = RateWindow(ceiling=max_write, length=window)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._consecutive_rejections = 0
        self._last_rejection: Optional[float] = None

    @property
    def max_total(self) -> int:
        return self._total.ceiling

    @property
    def max_write(self) -> int:
        return self._write.ceiling

    @property
    def consecutive_rejections(self) -> int:
        with self._lock:
            return self._consecutive_rejections

    def admit(self, is_write: bool) -> bool:
        with self._lock:
            return self._admit_locked(is_write, self._clock())

    def record(self, is_write: bool) -> None:
        with self._lock:
            self._record_locked(is_write, self._clock())

    def try_acquire(self, is_write: bool) -> bool:
        """Admit and record in one step; False leaves the windows untouched."""

        with self._lock:
            now = self._clock()
            if not self._admit_locked(is_write, now):
                return False
            self._record_locked(is_write, now)
            return True

    def preemptive_delay(self, is_write: bool) -> float:
        with self._lock:
            now = self._clock()
            delay = 0.0
            if self._last_rejection is not None and now - self._last_rejection < REJECTION_MEMORY_SECONDS:
                delay = self._consecutive_rejections * REJECTION_PENALTY_SECONDS
            window = self._write if is_write else self._total
            utilization = window.utilization(now)
            if is_write:
                utilization = max(utilization, self._total.utilization(now))
            if utilization > UTILIZATION_THRESHOLD:
                delay = max(delay, 0.5 * (utilization - UTILIZATION_THRESHOLD) * 10)
            return min(delay, MAX_PREEMPTIVE_DELAY)

    def backoff_delay(self, attempt: int, retry_after: Optional[str] = None) -> float:
        if retry_after is not None:
            try:
                value = float(str(retry_after).strip())
            except ValueError:
                value = None
            if value is not None and math.isfinite(value) and value >= 0:
                logger.info("Using Retry-After header value: %.2f seconds", value)
                return value

        exponential = self._base_delay * (2 ** (max(attempt, 1) - 1))
        with self._lock:
            jitter = 1.0 - JITTER + self._rng.random() * 2 * JITTER
        delay = min(exponential * jitter, self._max_delay)
        logger.info("Calculated retry delay: %.2f seconds (attempt %d)", delay, attempt)
        return delay

    def optimal_batch_size(self, total_ceiling: Optional[int] = None, write_ceiling: Optional[int] = None) -> int:
        with self._lock:
            now = self._clock()
            total_cap = self._total.ceiling if total_ceiling is None else total_ceiling
            write_cap = self._write.ceiling if write_ceiling is None else write_ceiling
            remaining_total = max(0, total_cap - self._total.count(now))
            remaining_write = max(0, write_cap - self._write.count(now))
        safe = int(BATCH_HEADROOM * min(remaining_total, remaining_write))
        return max(1, min(MAX_BATCH_ITEMS, safe))

    def split_into_batches(self, items: Sequence[T]) -> List[List[T]]:
        size = self.optimal_batch_size()
        batches = [list(items[index:index + size]) for index in range(0, len(items), size)]
        logger.info("Split %d items into %d batches of size %d", len(items), len(batches), size)
        return batches

    def record_rate_limit(self) -> None:
        with self._lock:
            self._last_rejection = self._clock()
            self._consecutive_rejections += 1
            count = self._consecutive_rejections
        logger.warning("Rate limit hit. Consecutive rate limits: %d", count)

    def reset_rate_limit_tracking(self) -> None:
        with self._lock:
            if self._consecutive_rejections == 0:
                return
            self._consecutive_rejections = 0
        logger.info("Rate limit tracking reset after successful request")

    def status(self) -> RateLimitStatus:
        with self._lock:
            now = self._clock()
            return RateLimitStatus(
                total=self._total.count(now),
                write=self._write.count(now),
                max_total=self._total.ceiling,
                max_write=self._write.ceiling,
                consecutive_rejections=self._consecutive_rejections,
            )

    def _admit_locked(self, is_write: bool, now: float) -> bool:
        total = self._total.count(now)
        write = self._write.count(now)
        if total >= self._total.ceiling:
            logger.debug("Total rate limit reached: %d/%d requests in window", total, self._total.ceiling)
            return False
        if is_write and write >= self._write.ceiling:
            logger.debug("Write rate limit reached: %d/%d write requests in window", write, self._write.ceiling)
            return False
        return True

    def _record_locked(self, is_write: bool, now: float) -> None:
        self._total.append(now)
        if is_write:
            self._write.append(now)
