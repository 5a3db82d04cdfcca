# --------------------------- tests/unit/test_rate_limiter.py ----------------------------
"""
Quote Intake · Rate Limiter Tests

Concurrency and spacing ceilings under bursts, priority ordering, reservoir
queueing and the tier registry.
"""

import asyncio
import time

import pytest

from quote_intake.errors import ValidationError
from quote_intake.services.rate_limiter import LimiterRegistry, RateLimiter, RateLimiterConfig


class CallRecorder:
    """Records concurrency and dispatch times of scheduled calls."""

    def __init__(self):
        self.running = 0
        self.max_running = 0
        self.started = []

    async def call(self, value=None, duration=0.01):
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.started.append(time.monotonic())
        try:
            await asyncio.sleep(duration)
            return value
        finally:
            self.running -= 1


# ===============================================================================
# CEILINGS
# ===============================================================================

class TestRateLimiterCeilings:
    """A 10x burst never breaks the configured limits."""

    @pytest.mark.asyncio
    async def test_burst_respects_max_concurrency(self):
        limiter = RateLimiter(RateLimiterConfig(name="test", max_concurrent=3))
        recorder = CallRecorder()

        results = await asyncio.gather(*(limiter.schedule(lambda i=i: recorder.call(i)) for i in range(30)))

        assert results == list(range(30))
        assert recorder.max_running <= 3
        assert limiter.status()["done"] == 30

    @pytest.mark.asyncio
    async def test_burst_respects_min_spacing(self):
        limiter = RateLimiter(RateLimiterConfig(name="test", max_concurrent=5, min_time=0.02))
        recorder = CallRecorder()

        await asyncio.gather(*(limiter.schedule(lambda: recorder.call(duration=0)) for _ in range(10)))

        gaps = [b - a for a, b in zip(recorder.started, recorder.started[1:])]
        assert all(gap >= 0.015 for gap in gaps)

    @pytest.mark.asyncio
    async def test_reservoir_queues_instead_of_rejecting(self):
        limiter = RateLimiter(RateLimiterConfig(
            name="test", max_concurrent=5, reservoir=2, reservoir_refresh_interval=0.2,
        ))
        recorder = CallRecorder()
        begin = time.monotonic()

        results = await asyncio.gather(*(limiter.schedule(lambda i=i: recorder.call(i, 0)) for i in range(4)))

        assert results == [0, 1, 2, 3]
        late = sorted(recorder.started)[2:]
        assert all(t - begin >= 0.15 for t in late)


# ===============================================================================
# PRIORITY & ERRORS
# ===============================================================================

class TestRateLimiterScheduling:
    """Priority ordering, sync callables and error propagation."""

    @pytest.mark.asyncio
    async def test_higher_priority_runs_first(self):
        limiter = RateLimiter(RateLimiterConfig(name="test", max_concurrent=1))
        gate = asyncio.Event()
        order = []

        async def blocker():
            await gate.wait()

        async def record(label):
            order.append(label)

        first = asyncio.ensure_future(limiter.schedule(blocker))
        await asyncio.sleep(0.01)
        queued = [
            asyncio.ensure_future(limiter.schedule(lambda: record("low"), priority=1)),
            asyncio.ensure_future(limiter.schedule(lambda: record("high"), priority=9)),
            asyncio.ensure_future(limiter.schedule(lambda: record("default"))),
        ]
        await asyncio.sleep(0.01)
        gate.set()
        await asyncio.gather(first, *queued)

        assert order == ["high", "default", "low"]

    @pytest.mark.asyncio
    async def test_sync_callable_result_is_returned(self):
        limiter = RateLimiter(RateLimiterConfig(name="test"))

        assert await limiter.schedule(lambda: 42) == 42

    @pytest.mark.asyncio
    async def test_exception_propagates_and_frees_slot(self):
        limiter = RateLimiter(RateLimiterConfig(name="test", max_concurrent=1))

        def boom():
            raise RuntimeError("provider down")

        with pytest.raises(RuntimeError, match="provider down"):
            await limiter.schedule(boom)
        assert await limiter.schedule(lambda: "ok") == "ok"
        assert limiter.status()["running"] == 0

    @pytest.mark.asyncio
    async def test_in_flight_tasks_are_held_until_done(self):
        limiter = RateLimiter(RateLimiterConfig(name="test", max_concurrent=2))
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "ok"

        pending = asyncio.ensure_future(limiter.schedule(slow))
        await asyncio.sleep(0.01)
        assert any(not task.done() for task in limiter._tasks)

        release.set()
        assert await pending == "ok"
        await asyncio.sleep(0.01)
        assert limiter._tasks == set()

    @pytest.mark.asyncio
    async def test_invalid_priority_is_rejected(self):
        limiter = RateLimiter(RateLimiterConfig(name="test"))

        with pytest.raises(ValidationError):
            await limiter.schedule(lambda: None, priority=10)

    def test_reservoir_without_interval_is_invalid(self):
        with pytest.raises(ValueError):
            RateLimiterConfig(name="bad", reservoir=10)


class TestLimiterRegistry:
    """One limiter per tier from the configured limits."""

    def test_creates_one_limiter_per_tier(self):
        registry = LimiterRegistry({"llm": {"max_concurrent": 2}, "email": {"max_concurrent": 1}})

        assert registry["llm"] is registry.get("llm")
        assert registry["llm"].config.max_concurrent == 2
        assert set(registry.status()) == {"llm", "email"}

    def test_unknown_tier_is_rejected(self):
        with pytest.raises(ValidationError):
            LimiterRegistry({"llm": {}}).get("fax")

    def test_default_tiers_cover_every_dependency(self):
        assert set(LimiterRegistry().status()) == {"llm", "directory", "email", "web"}

    def test_describe_reports_configured_limits_without_creating_limiters(self):
        registry = LimiterRegistry({"web": {"max_concurrent": 5, "min_time": 1.0,
                                            "reservoir": 50, "reservoir_refresh_interval": 60.0}})

        described = registry.describe()

        assert described["web"]["max_concurrent"] == 5
        assert described["web"]["reservoir_refresh_amount"] == 50
        assert registry._limiters == {}
