# --------------------------- quote_intake/services/rate_limiter.py ----------------------------
"""
Quote Intake · Rate-Limited Invocation Layer

OVERVIEW:
Every call to an external dependency (LLM completion, directory search,
email send, web fetch) is scheduled through a RateLimiter dedicated to that
dependency class. The limiter shapes traffic; it never rejects work.

WORKFLOW:
1. schedule() wraps the call in a job and pushes it on a priority queue
2. A single drain task per limiter pops the highest-priority job once all
   three gates are open: concurrency, minimum spacing, reservoir capacity
3. The job runs as its own task; completion frees capacity and wakes the drain
4. The caller awaits the job's future and receives the result or the exception

BUSINESS LOGIC:
- Provider APIs bill and throttle per minute; bursts of inbound email must not
  translate into bursts of outbound calls
- Priority (0-9, higher first) lets geocoding jump ahead of bulk detail lookups
- Under sustained overload latency grows through queueing, never through errors
- Retries stay in the underlying client; this layer only shapes rate

TECHNICAL ARCHITECTURE:
- asyncio only, no threads; blocking clients are off-loaded by the caller with
  asyncio.to_thread inside the scheduled callable
- Reservoir refills lazily against an injectable clock
- Tiers configured in settings.RATE_LIMITS, one limiter per tier
"""

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from quote_intake.config import settings
from quote_intake.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
MIN_PRIORITY = 0
MAX_PRIORITY = 9


@dataclass
class RateLimiterConfig:
    """Limits for one external dependency class."""
    name: str
    max_concurrent: int = 1
    min_time: float = 0.0
    reservoir: Optional[int] = None
    reservoir_refresh_amount: Optional[int] = None
    reservoir_refresh_interval: Optional[float] = None

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValueError(f"{self.name}: max_concurrent must be >= 1")
        if self.min_time < 0:
            raise ValueError(f"{self.name}: min_time cannot be negative")
        if self.reservoir is not None:
            if self.reservoir_refresh_amount is None:
                self.reservoir_refresh_amount = self.reservoir
            if not self.reservoir_refresh_interval or self.reservoir_refresh_interval <= 0:
                raise ValueError(f"{self.name}: a reservoir needs a positive refresh interval")


@dataclass(order=True)
class _Job:
    sort_key: tuple
    weight: int = field(compare=False)
    fn: Callable[[], Any] = field(compare=False)
    future: asyncio.Future = field(compare=False)


class RateLimiter:
    """
    Priority queue in front of one external dependency.

    KEY METHODS:
    - schedule(): run a callable under the limits and return its result
    - status(): running / queued / reservoir snapshot
    """

    def __init__(self, config: RateLimiterConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.name = config.name
        self._clock = clock
        self._queue: List[_Job] = []
        self._counter = itertools.count()
        self._running = 0
        self._done = 0
        self._last_dispatch: Optional[float] = None
        self._reservoir = config.reservoir
        self._next_refill: Optional[float] = None
        self._changed: Optional[asyncio.Event] = None
        self._drainer: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self.logger = logging.getLogger(f"rate_limiter.{config.name}")

    async def schedule(self, fn: Callable[[], Any], *, priority: int = DEFAULT_PRIORITY, weight: int = 1) -> Any:
        """
        Run ``fn`` once the limiter allows it and return its result.

        ARGS:
            fn: zero-argument callable; may return a value or an awaitable
            priority: 0-9, higher runs first among queued jobs
            weight: capacity units consumed (concurrency slots and reservoir)

        RETURNS:
            Whatever ``fn`` returns (awaited if needed). Exceptions raised by
            ``fn`` propagate to the caller unchanged.
        """
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}", field="priority")
        if weight < 1 or weight > self.config.max_concurrent:
            raise ValidationError(f"weight must be between 1 and {self.config.max_concurrent}", field="weight")
        if self.config.reservoir_refresh_amount is not None and weight > self.config.reservoir_refresh_amount:
            raise ValidationError("weight exceeds the reservoir size", field="weight")

        loop = asyncio.get_running_loop()
        if self._changed is None:
            self._changed = asyncio.Event()
        if self._next_refill is None and self.config.reservoir is not None:
            self._next_refill = self._clock() + self.config.reservoir_refresh_interval

        job = _Job(sort_key=(-priority, next(self._counter)), weight=weight, fn=fn, future=loop.create_future())
        heapq.heappush(self._queue, job)
        self._changed.set()
        if self._drainer is None or self._drainer.done():
            self._drainer = self._spawn(self._drain())
        return await job.future

    # ── dispatch ──────────────────────────────────────────────────────────

    async def _drain(self) -> None:
        while self._queue:
            self._changed.clear()
            if self._queue[0].future.cancelled():
                heapq.heappop(self._queue)
                continue
            delay = self._next_delay(self._queue[0].weight)
            if delay == 0:
                self._start(heapq.heappop(self._queue))
                continue
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def _next_delay(self, weight: int) -> Optional[float]:
        """0 to dispatch now, seconds to wait, or None to wait for a completion."""
        now = self._clock()
        self._refill(now)
        if self._running + weight > self.config.max_concurrent:
            return None
        if self._reservoir is not None and self._reservoir < weight:
            return max(self._next_refill - now, 0.001)
        if self._last_dispatch is not None:
            wait = self._last_dispatch + self.config.min_time - now
            if wait > 0:
                return wait
        return 0

    def _refill(self, now: float) -> None:
        if self._reservoir is None or self._next_refill is None or now < self._next_refill:
            return
        interval = self.config.reservoir_refresh_interval
        missed = int((now - self._next_refill) // interval) + 1
        self._next_refill += missed * interval
        self._reservoir = self.config.reservoir_refresh_amount

    def _start(self, job: _Job) -> None:
        self._running += job.weight
        self._last_dispatch = self._clock()
        if self._reservoir is not None:
            self._reservoir -= job.weight
            if self._reservoir == 0:
                self.logger.warning(f"Rate limiter {self.name} depleted, queueing until refill")
        self._spawn(self._run(job))

    def _spawn(self, coro) -> asyncio.Task:
        # the loop only keeps weak references to tasks
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job: _Job) -> None:
        try:
            result = job.fn()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            if not job.future.done():
                job.future.set_exception(e)
        else:
            if not job.future.done():
                job.future.set_result(result)
        finally:
            self._running -= job.weight
            self._done += 1
            self._changed.set()

    # ── introspection ─────────────────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "queued": len(self._queue),
            "done": self._done,
            "reservoir": self._reservoir,
        }


class LimiterRegistry:
    """One lazily created RateLimiter per dependency tier."""

    def __init__(self, limits: Optional[Dict[str, Dict[str, Any]]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._limits = limits if limits is not None else settings.RATE_LIMITS
        self._clock = clock
        self._limiters: Dict[str, RateLimiter] = {}

    def get(self, tier: str) -> RateLimiter:
        if tier not in self._limiters:
            if tier not in self._limits:
                raise ValidationError(f"unknown rate limit tier '{tier}'", field="tier")
            config = RateLimiterConfig(name=tier, **self._limits[tier])
            self._limiters[tier] = RateLimiter(config, clock=self._clock)
        return self._limiters[tier]

    def __getitem__(self, tier: str) -> RateLimiter:
        return self.get(tier)

    def describe(self) -> Dict[str, Dict[str, Any]]:
        """Configured limits per tier, without creating any limiter."""
        return {
            tier: {k: v for k, v in asdict(RateLimiterConfig(name=tier, **limits)).items() if k != "name"}
            for tier, limits in self._limits.items()
        }

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {tier: self.get(tier).status() for tier in self._limits}

    def log_limiters_status(self) -> None:
        for tier, snapshot in self.status().items():
            logger.info(
                f"Limiter {tier}: running={snapshot['running']} queued={snapshot['queued']} "
                f"reservoir={snapshot['reservoir']} done={snapshot['done']}"
            )

