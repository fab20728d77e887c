"""Tests for SlidingWindowRateLimiter.

Tests cover:
- Window admission (N calls admitted, call N+1 waits for the window)
- Concurrency caps
- Priority ordering and FIFO within a priority
- Queue clearing, reset, shutdown
- Status snapshots and health
"""

import asyncio
import time

import pytest

from diligence_gateway.config import ProviderConfig
from diligence_gateway.core.errors import ProviderNotRegisteredError, QueueClearedError
from diligence_gateway.core.gateway.rate_limiter import SlidingWindowRateLimiter


def _limiter(**config_kwargs) -> SlidingWindowRateLimiter:
    limiter = SlidingWindowRateLimiter(drain_spacing=0.0)
    limiter.register("p", ProviderConfig(name="p", **config_kwargs))
    return limiter


async def _blocker(limiter: SlidingWindowRateLimiter, release: asyncio.Event) -> asyncio.Task:
    """Occupy the provider's only concurrency slot until ``release`` is set."""

    async def hold():
        await release.wait()
        return "held"

    task = asyncio.create_task(limiter.execute("p", hold))
    await asyncio.sleep(0)
    return task


class TestWindowAdmission:
    """Tests for sliding-window admission."""

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_call_beyond_window_waits_for_oldest_to_expire(self):
        """With R=3 per 0.3s, the fourth call starts only after the window slides."""
        limiter = _limiter(requests_per_window=3, window_override_seconds=0.3, max_concurrent=10)
        started = []

        async def work():
            started.append(time.monotonic())

        await asyncio.gather(*(limiter.execute("p", work) for _ in range(4)))

        assert len(started) == 4
        assert started[2] - started[0] < 0.1
        assert started[3] - started[0] >= 0.25
        await limiter.shutdown()

    @pytest.mark.asyncio
    async def test_admitted_calls_run_immediately(self):
        limiter = _limiter(requests_per_window=5, max_concurrent=5)

        async def work():
            return 42

        assert await limiter.execute("p", work) == 42
        status = limiter.queue_status("p")
        assert status.recent_requests == 1
        assert status.in_flight == 0
        assert status.queue_length == 0

    @pytest.mark.asyncio
    async def test_full_window_reports_estimated_wait(self):
        limiter = _limiter(requests_per_window=1, window_override_seconds=30)

        async def work():
            return None

        await limiter.execute("p", work)
        status = limiter.queue_status("p")
        assert status.recent_requests == 1
        assert 29 < status.estimated_wait <= 30

    @pytest.mark.asyncio
    async def test_unregistered_provider(self):
        limiter = SlidingWindowRateLimiter()

        async def work():
            return None

        with pytest.raises(ProviderNotRegisteredError):
            await limiter.execute("nope", work)

    @pytest.mark.asyncio
    async def test_work_exception_propagates(self):
        limiter = _limiter()

        async def work():
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            await limiter.execute("p", work)
        assert limiter.queue_status("p").in_flight == 0


class TestConcurrencyAndOrdering:
    """Tests for concurrency caps and priority draining."""

    @pytest.mark.asyncio
    async def test_never_exceeds_max_concurrent(self):
        limiter = _limiter(max_concurrent=2, requests_per_window=100)
        running = 0
        peak = 0

        async def work():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        await asyncio.gather(*(limiter.execute("p", work) for _ in range(6)))
        assert peak == 2
        await limiter.shutdown()

    @pytest.mark.asyncio
    async def test_higher_priority_drains_first(self):
        limiter = _limiter(max_concurrent=1)
        release = asyncio.Event()
        blocker = await _blocker(limiter, release)
        order = []

        def job(tag):
            async def work():
                order.append(tag)
                return tag

            return work

        waiters = [
            asyncio.create_task(limiter.execute("p", job(f"prio{p}"), priority=p)) for p in (1, 5, 3)
        ]
        await asyncio.sleep(0.01)
        assert limiter.queue_status("p").queue_length == 3

        release.set()
        results = await asyncio.gather(*waiters)

        assert order == ["prio5", "prio3", "prio1"]
        assert results == ["prio1", "prio5", "prio3"]
        assert await blocker == "held"
        await limiter.shutdown()

    @pytest.mark.asyncio
    async def test_fifo_within_same_priority(self):
        limiter = _limiter(max_concurrent=1)
        release = asyncio.Event()
        blocker = await _blocker(limiter, release)
        order = []

        def job(tag):
            async def work():
                order.append(tag)

            return work

        waiters = [asyncio.create_task(limiter.execute("p", job(i))) for i in range(4)]
        await asyncio.sleep(0.01)
        release.set()
        await asyncio.gather(blocker, *waiters)

        assert order == [0, 1, 2, 3]
        await limiter.shutdown()

    @pytest.mark.asyncio
    async def test_queued_call_exception_reaches_its_caller(self):
        limiter = _limiter(max_concurrent=1)
        release = asyncio.Event()
        blocker = await _blocker(limiter, release)

        async def failing():
            raise RuntimeError("provider down")

        waiter = asyncio.create_task(limiter.execute("p", failing))
        await asyncio.sleep(0.01)
        release.set()

        with pytest.raises(RuntimeError, match="provider down"):
            await waiter
        await blocker
        await limiter.shutdown()


class TestQueueManagement:
    """Tests for clear_queue, reset, health and shutdown."""

    @pytest.mark.asyncio
    async def test_clear_queue_rejects_pending_calls(self):
        """Clearing four pending calls rejects all four with a non-retryable error."""
        limiter = _limiter(max_concurrent=1)
        release = asyncio.Event()
        blocker = await _blocker(limiter, release)

        async def work():
            return "ran"

        waiters = [asyncio.create_task(limiter.execute("p", work)) for _ in range(4)]
        await asyncio.sleep(0.01)

        assert limiter.clear_queue("p") == 4
        assert limiter.queue_status("p").queue_length == 0

        results = await asyncio.gather(*waiters, return_exceptions=True)
        for result in results:
            assert isinstance(result, QueueClearedError)
            assert result.error.retryable is False
            assert result.error.message == "Queue cleared"

        # The in-flight call is untouched
        release.set()
        assert await blocker == "held"
        await limiter.shutdown()

    @pytest.mark.asyncio
    async def test_abandoned_calls_leave_the_queue(self):
        """Callers that time out while queued no longer count against the queue."""
        limiter = SlidingWindowRateLimiter(drain_spacing=0.0, max_queue_length=2)
        limiter.register("p", ProviderConfig(name="p", max_concurrent=1))
        release = asyncio.Event()
        blocker = await _blocker(limiter, release)
        ran = []

        async def work():
            ran.append(True)

        waiters = [
            asyncio.create_task(asyncio.wait_for(limiter.execute("p", work), 0.01))
            for _ in range(3)
        ]
        for _ in range(10):
            await asyncio.sleep(0)
        assert limiter.queue_status("p").queue_length == 3
        assert limiter.queue_status("p").draining is True
        assert limiter.health_check() is False

        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, asyncio.TimeoutError) for r in results)
        assert limiter.queue_status("p").queue_length == 0
        assert limiter.health_check() is True
        assert limiter.clear_queue("p") == 0

        release.set()
        assert await blocker == "held"
        await asyncio.sleep(0.01)
        assert ran == []
        assert limiter.queue_status("p").draining is False
        await limiter.shutdown()

    @pytest.mark.asyncio
    async def test_clear_unknown_or_empty_queue(self):
        limiter = _limiter()
        assert limiter.clear_queue("p") == 0
        assert limiter.clear_queue("unknown") == 0

    @pytest.mark.asyncio
    async def test_reset_forgets_window(self):
        limiter = _limiter(requests_per_window=1, window_override_seconds=60)

        async def work():
            return "ok"

        await limiter.execute("p", work)
        limiter.reset("p")

        assert limiter.queue_status("p").recent_requests == 0
        assert await asyncio.wait_for(limiter.execute("p", work), timeout=1.0) == "ok"

    @pytest.mark.asyncio
    async def test_health_check_false_when_queue_too_long(self):
        limiter = SlidingWindowRateLimiter(drain_spacing=0.0, max_queue_length=2)
        limiter.register("p", ProviderConfig(name="p", max_concurrent=1))
        release = asyncio.Event()
        blocker = await _blocker(limiter, release)
        assert limiter.health_check() is True

        async def work():
            return None

        waiters = [asyncio.create_task(limiter.execute("p", work)) for _ in range(3)]
        await asyncio.sleep(0.01)
        assert limiter.health_check() is False

        release.set()
        await asyncio.gather(blocker, *waiters)
        assert limiter.health_check() is True
        await limiter.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_rejects_queued_and_new_calls(self):
        limiter = _limiter(max_concurrent=1)
        release = asyncio.Event()
        blocker = await _blocker(limiter, release)

        async def work():
            return None

        waiter = asyncio.create_task(limiter.execute("p", work))
        await asyncio.sleep(0.01)
        await limiter.shutdown()

        with pytest.raises(QueueClearedError):
            await waiter
        with pytest.raises(QueueClearedError):
            await limiter.execute("p", work)

        release.set()
        assert await blocker == "held"

    @pytest.mark.asyncio
    async def test_all_stats(self):
        limiter = SlidingWindowRateLimiter()
        limiter.register("a", ProviderConfig(name="a"))
        limiter.register("b", ProviderConfig(name="b"))

        stats = limiter.all_stats()
        assert set(stats) == {"a", "b"}
        assert stats["a"] == {
            "queue_length": 0,
            "in_flight": 0,
            "recent_requests": 0,
            "estimated_wait": 0.0,
            "draining": False,
        }
