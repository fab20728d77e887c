"""Per-provider sliding-window rate limiter with priority queueing.

Each registered provider gets a window of recent admission timestamps, an
in-flight counter and a priority heap of pending calls. A call is admitted
when fewer than ``max_concurrent`` calls are in flight and fewer than
``requests_per_window`` admissions fall inside the trailing window.

Calls that cannot be admitted immediately are queued and drained by one
long-lived worker task per provider. The worker sleeps on an event until
something changes (a call is queued, a call completes) or until the oldest
admission leaves the window, then starts the best pending call and waits a
short spacing before the next one.
"""

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from diligence_gateway.config.providers import ProviderConfig
from diligence_gateway.core.errors import ProviderNotRegisteredError, QueueClearedError
from diligence_gateway.core.gateway.models import Clock, QueueStatus, SleepFunc
from diligence_gateway.core.observability import audit_log

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_SPACING = 0.01
DEFAULT_MAX_QUEUE_LENGTH = 1000

Work = Callable[[], Awaitable[Any]]


@dataclass
class QueuedCall:
    """A call waiting for admission.

    Ordered by priority (higher first), then enqueue time, then sequence.
    """

    work: Work
    future: "asyncio.Future[Any]"
    priority: int
    enqueued_at: float
    seq: int

    @property
    def sort_key(self) -> Tuple[int, float, int]:
        return (-self.priority, self.enqueued_at, self.seq)


@dataclass
class RateWindowState:
    """Limiter state for one provider."""

    config: ProviderConfig
    timestamps: Deque[float] = field(default_factory=deque)
    in_flight: int = 0
    queue: List[Tuple[Tuple[int, float, int], QueuedCall]] = field(default_factory=list)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    worker: Optional["asyncio.Task[None]"] = None
    draining: bool = False


class SlidingWindowRateLimiter:
    """Admission control for provider calls.

    Example:
        >>> limiter = SlidingWindowRateLimiter()
        >>> limiter.register("polygon", ProviderConfig("polygon", requests_per_window=5))
        >>> result = await limiter.execute("polygon", lambda: fetch_quote("IBM"), priority=1)
    """

    def __init__(
        self,
        *,
        drain_spacing: float = DEFAULT_DRAIN_SPACING,
        max_queue_length: int = DEFAULT_MAX_QUEUE_LENGTH,
        clock: Optional[Clock] = None,
        sleep_func: Optional[SleepFunc] = None,
    ) -> None:
        self._states: Dict[str, RateWindowState] = {}
        self._spacing = drain_spacing
        self._max_queue_length = max_queue_length
        self._clock = clock or time.monotonic
        self._sleep = sleep_func or asyncio.sleep
        self._seq = itertools.count()
        self._running: Set["asyncio.Task[None]"] = set()
        self._closed = False

    def register(self, provider: str, config: ProviderConfig) -> None:
        """Create empty window state for ``provider``."""
        if provider in self._states:
            logger.debug(f"Rate limiter already has provider {provider}, keeping existing state")
            return
        self._states[provider] = RateWindowState(config=config)

    async def execute(self, provider: str, work: Work, priority: int = 0) -> Any:
        """Run ``work`` once ``provider`` admits it.

        Runs immediately when the call is admissible and nothing is queued
        ahead of it; otherwise queues it by priority and waits.

        Raises:
            ProviderNotRegisteredError: If ``provider`` was never registered
            QueueClearedError: If the queue is cleared while the call waits
            Exception: Whatever ``work`` raises
        """
        state = self._states.get(provider)
        if state is None:
            raise ProviderNotRegisteredError(provider)
        if self._closed:
            raise QueueClearedError(provider)

        if not state.queue and self._try_admit(state):
            return await self._run(state, work)

        loop = asyncio.get_running_loop()
        call = QueuedCall(
            work=work,
            future=loop.create_future(),
            priority=priority,
            enqueued_at=self._clock(),
            seq=next(self._seq),
        )
        heapq.heappush(state.queue, (call.sort_key, call))
        call.future.add_done_callback(lambda future: self._forget_abandoned(state, call))
        audit_log(
            "rate_limit_wait",
            provider=provider,
            priority=priority,
            queue_length=len(state.queue),
        )
        self._ensure_worker(provider, state)
        state.wakeup.set()
        return await call.future

    def clear_queue(self, provider: str) -> int:
        """Reject every pending call for ``provider``; in-flight calls are untouched.

        Returns:
            Number of calls rejected
        """
        state = self._states.get(provider)
        if state is None:
            return 0

        pending, state.queue = state.queue, []
        rejected = 0
        for _, call in pending:
            if not call.future.done():
                call.future.set_exception(QueueClearedError(provider))
                rejected += 1

        if rejected:
            logger.warning(f"Cleared {rejected} queued calls for {provider}")
            audit_log("queue_cleared", provider=provider, rejected=rejected)
        return rejected

    def reset(self, provider: str) -> None:
        """Clear the queue and forget the admission window for ``provider``."""
        state = self._states.get(provider)
        if state is None:
            return
        self.clear_queue(provider)
        state.timestamps.clear()
        state.wakeup.set()

    def queue_status(self, provider: str) -> QueueStatus:
        """Snapshot of ``provider``'s queue, concurrency and window usage."""
        state = self._states.get(provider)
        if state is None:
            return QueueStatus()

        now = self._clock()
        self._prune(state, now)
        return QueueStatus(
            queue_length=len(state.queue),
            in_flight=state.in_flight,
            recent_requests=len(state.timestamps),
            estimated_wait=self._estimated_wait(state, now),
            draining=state.draining,
        )

    def all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.queue_status(name).to_dict() for name in self._states}

    def health_check(self) -> bool:
        """False when any provider queue is longer than the configured maximum."""
        return all(len(s.queue) <= self._max_queue_length for s in self._states.values())

    async def shutdown(self) -> None:
        """Reject queued calls and stop drain workers.

        In-flight calls run to completion; they are not awaited here.
        """
        self._closed = True
        workers = []
        for name, state in self._states.items():
            self.clear_queue(name)
            if state.worker is not None:
                state.worker.cancel()
                workers.append(state.worker)
                state.worker = None
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def _prune(self, state: RateWindowState, now: float) -> None:
        cutoff = now - state.config.window_seconds
        while state.timestamps and state.timestamps[0] <= cutoff:
            state.timestamps.popleft()

    def _try_admit(self, state: RateWindowState) -> bool:
        """Check and claim a slot with no suspension point in between."""
        now = self._clock()
        self._prune(state, now)
        if state.in_flight >= state.config.max_concurrent:
            return False
        if len(state.timestamps) >= state.config.requests_per_window:
            return False
        state.in_flight += 1
        state.timestamps.append(now)
        return True

    def _window_wait(self, state: RateWindowState, now: float) -> float:
        """Seconds until the oldest admission leaves the window, 0 if not full."""
        if len(state.timestamps) < state.config.requests_per_window:
            return 0.0
        return max(0.0, state.timestamps[0] + state.config.window_seconds - now)

    def _estimated_wait(self, state: RateWindowState, now: float) -> float:
        if not state.queue and state.in_flight < state.config.max_concurrent:
            return self._window_wait(state, now)
        return self._window_wait(state, now) + len(state.queue) * self._spacing

    def _forget_abandoned(self, state: RateWindowState, call: QueuedCall) -> None:
        """Drop a call whose caller was cancelled while it was still queued."""
        if not call.future.cancelled():
            return
        remaining = [entry for entry in state.queue if entry[1] is not call]
        if len(remaining) == len(state.queue):
            return
        heapq.heapify(remaining)
        state.queue = remaining
        state.wakeup.set()

    async def _run(self, state: RateWindowState, work: Work) -> Any:
        try:
            return await work()
        finally:
            state.in_flight -= 1
            state.wakeup.set()

    async def _run_queued(self, state: RateWindowState, call: QueuedCall) -> None:
        try:
            result = await self._run(state, call.work)
        except asyncio.CancelledError:
            if not call.future.done():
                call.future.cancel()
            raise
        except Exception as e:
            if not call.future.done():
                call.future.set_exception(e)
        else:
            if not call.future.done():
                call.future.set_result(result)

    def _ensure_worker(self, provider: str, state: RateWindowState) -> None:
        if state.worker is None or state.worker.done():
            state.worker = asyncio.create_task(
                self._drain(provider, state), name=f"rate-limiter-drain:{provider}"
            )

    async def _wait_for_change(self, state: RateWindowState, timeout: Optional[float]) -> None:
        state.wakeup.clear()
        if timeout is None:
            await state.wakeup.wait()
            return
        try:
            await asyncio.wait_for(state.wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _drain(self, provider: str, state: RateWindowState) -> None:
        """Worker loop: admit queued calls as capacity frees up."""
        while not self._closed:
            if not state.queue:
                state.draining = False
                await self._wait_for_change(state, None)
                continue

            state.draining = True
            now = self._clock()
            self._prune(state, now)

            if state.in_flight >= state.config.max_concurrent:
                await self._wait_for_change(state, None)
                continue

            window_wait = self._window_wait(state, now)
            if window_wait > 0:
                await self._wait_for_change(state, window_wait)
                continue

            _, call = heapq.heappop(state.queue)
            if call.future.done():
                # Caller gave up while queued
                continue

            if not self._try_admit(state):
                heapq.heappush(state.queue, (call.sort_key, call))
                continue
            task = asyncio.create_task(self._run_queued(state, call))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

            if self._spacing > 0:
                await self._sleep(self._spacing)

        state.draining = False
