"""
Per-tenant rate limiter using continuously refilling token buckets.

Every tenant gets four overlapping windows (second, five minutes, hour,
day). A call is granted only when all four hold a token, and a grant
consumes one token from each.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


class RateLimitExceeded(Exception):
    """Raised when a grant cannot be obtained within the allowed wait."""

    def __init__(self, message: str, retry_after: float, tenant_id: str | None = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.tenant_id = tenant_id


@dataclass(frozen=True)
class RateWindow:
    name: str
    seconds: float
    ceiling: int


DEFAULT_WINDOWS = (
    RateWindow("second", 1, 20),
    RateWindow("five_minute", 300, 300),
    RateWindow("hour", 3600, 3000),
    RateWindow("day", 86400, 12000),
)


@dataclass(frozen=True)
class Grant:
    granted: bool
    retry_after: float = 0.0


class TokenBucket:
    """
    Leaky bucket for one window. Not thread-safe on its own;
    the owning TenantBudget serializes access.

    Tokens refill continuously at ceiling/seconds per second rather than
    resetting at window boundaries, so tenants never stampede at a reset.
    """

    def __init__(self, window: RateWindow, now: float):
        self.window = window
        self.capacity = float(window.ceiling)
        self.rate = window.ceiling / window.seconds
        self.tokens = self.capacity
        self._last_refill = now

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self._last_refill = now

    def time_until(self, needed: float = 1.0) -> float:
        """Seconds until `needed` tokens are available (after refill)."""
        if self.tokens >= needed:
            return 0.0
        return (needed - self.tokens) / self.rate

    @property
    def full(self) -> bool:
        return self.tokens >= self.capacity


@dataclass
class BudgetStats:
    requests_granted: int = 0
    requests_denied: int = 0
    total_wait_time: float = 0.0
    last_grant_time: float = 0.0


class TenantBudget:
    """The four buckets of one tenant, plus upstream backpressure."""

    def __init__(self, windows: tuple[RateWindow, ...], now: float):
        self.buckets = [TokenBucket(w, now) for w in windows]
        self.blocked_until = 0.0
        self.last_used = now
        self.lock = threading.Lock()
        self.stats = BudgetStats()

    def try_consume(self, now: float) -> Grant:
        """Must hold lock."""
        for bucket in self.buckets:
            bucket.refill(now)
        self.last_used = now

        if now < self.blocked_until:
            self.stats.requests_denied += 1
            return Grant(False, self.blocked_until - now)

        # Every window must be satisfied, so the longest wait binds
        wait = max(bucket.time_until(1.0) for bucket in self.buckets)
        if wait > 0:
            self.stats.requests_denied += 1
            return Grant(False, wait)

        for bucket in self.buckets:
            bucket.tokens -= 1.0
        self.stats.requests_granted += 1
        self.stats.last_grant_time = time.time()
        return Grant(True)


class MultiWindowRateLimiter:
    """
    Thread-safe arena of per-tenant budgets.

    The arena lock only guards budget creation and pruning; grants take the
    tenant's own lock, so tenants never contend with each other.

    Example:
        limiter = MultiWindowRateLimiter()

        grant = limiter.try_acquire("shop-1")
        if not grant.granted:
            reschedule(after=grant.retry_after)
    """

    def __init__(
        self,
        windows: tuple[RateWindow, ...] = DEFAULT_WINDOWS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not windows:
            raise ValueError("at least one rate window is required")
        self.windows = tuple(windows)
        self._clock = clock
        self._sleep = sleep
        self._budgets: dict[str, TenantBudget] = {}
        self._lock = threading.Lock()

    def _budget(self, tenant_id: str) -> TenantBudget:
        with self._lock:
            budget = self._budgets.get(tenant_id)
            if budget is None:
                budget = TenantBudget(self.windows, self._clock())
                self._budgets[tenant_id] = budget
            return budget

    def try_acquire(self, tenant_id: str) -> Grant:
        """Non-blocking grant attempt. Denial is a signal, never an error."""
        budget = self._budget(tenant_id)
        with budget.lock:
            return budget.try_consume(self._clock())

    def acquire(
        self,
        tenant_id: str,
        max_wait: float,
        cancel_event: threading.Event | None = None,
    ) -> bool:
        """
        Acquire a grant, suspending on denial.

        Args:
            tenant_id: Tenant whose budget is charged
            max_wait: Total seconds this call may spend waiting
            cancel_event: Stops the wait early when set

        Returns:
            True once granted, False if cancel_event was set while waiting

        Raises:
            RateLimitExceeded: if the next wait would exceed max_wait
        """
        waited = 0.0
        while True:
            grant = self.try_acquire(tenant_id)
            if grant.granted:
                return True

            if waited + grant.retry_after > max_wait:
                logger.info(
                    "Rate budget exhausted",
                    tenant_id=tenant_id,
                    retry_after=round(grant.retry_after, 3),
                    waited=round(waited, 3),
                )
                raise RateLimitExceeded(
                    f"No rate budget for tenant {tenant_id} within {max_wait}s",
                    retry_after=grant.retry_after,
                    tenant_id=tenant_id,
                )

            budget = self._budget(tenant_id)
            with budget.lock:
                budget.stats.total_wait_time += grant.retry_after

            # Wait outside any lock
            if cancel_event is not None:
                if cancel_event.wait(grant.retry_after):
                    return False
            else:
                self._sleep(grant.retry_after)
            waited += grant.retry_after

    def throttle(self, tenant_id: str, seconds: float) -> None:
        """Block a tenant for `seconds` after the upstream pushed back."""
        budget = self._budget(tenant_id)
        with budget.lock:
            until = self._clock() + max(0.0, seconds)
            budget.blocked_until = max(budget.blocked_until, until)
        logger.warning("Upstream throttled tenant", tenant_id=tenant_id, seconds=seconds)

    def prune_idle(self, max_idle_seconds: float = 3600.0) -> int:
        """
        Drop budgets that are fully refilled and idle.

        A dropped budget is recreated full on next use, which is the same
        state it would have refilled to.
        """
        now = self._clock()
        removed = 0
        with self._lock:
            for tenant_id in list(self._budgets):
                budget = self._budgets[tenant_id]
                with budget.lock:
                    for bucket in budget.buckets:
                        bucket.refill(now)
                    idle = now - budget.last_used >= max_idle_seconds
                    if idle and now >= budget.blocked_until and all(b.full for b in budget.buckets):
                        del self._budgets[tenant_id]
                        removed += 1
        if removed:
            logger.debug("Pruned idle rate budgets", removed=removed)
        return removed

    def available_tokens(self, tenant_id: str) -> dict[str, float]:
        """Current tokens per window for a tenant."""
        budget = self._budget(tenant_id)
        with budget.lock:
            now = self._clock()
            for bucket in budget.buckets:
                bucket.refill(now)
            return {b.window.name: b.tokens for b in budget.buckets}

    def get_stats(self) -> dict[str, dict]:
        """Per-tenant statistics for monitoring."""
        with self._lock:
            budgets = dict(self._budgets)
        stats = {}
        for tenant_id, budget in budgets.items():
            with budget.lock:
                stats[tenant_id] = {
                    "requests_granted": budget.stats.requests_granted,
                    "requests_denied": budget.stats.requests_denied,
                    "total_wait_time_seconds": round(budget.stats.total_wait_time, 2),
                    "available_tokens": {
                        b.window.name: round(b.tokens, 1) for b in budget.buckets
                    },
                }
        return stats
