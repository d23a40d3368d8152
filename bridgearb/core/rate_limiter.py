"""Per-venue call spacing, single-flight admission and the execution queue."""

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from loguru import logger

from ..errors import BusyError


class RateLimiter:
    """Keeps consecutive calls to the same venue at least min_interval apart."""

    def __init__(self, min_intervals_ms: Dict[str, int], default_interval_ms: int = 200,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.min_intervals_ms = dict(min_intervals_ms)
        self.default_interval_ms = min_intervals_ms.get("default", default_interval_ms)
        self.clock = clock
        self.sleep = sleep
        self._last_call: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.waits: Dict[str, int] = {}

    def interval_s(self, venue: str) -> float:
        return self.min_intervals_ms.get(venue, self.default_interval_ms) / 1000

    def _lock(self, venue: str) -> asyncio.Lock:
        if venue not in self._locks:
            self._locks[venue] = asyncio.Lock()
        return self._locks[venue]

    async def wait_for_slot(self, venue: str):
        """Suspend until the venue's interval has passed, then claim the slot."""
        async with self._lock(venue):
            interval = self.interval_s(venue)
            last = self._last_call.get(venue)
            if last is not None:
                remaining = interval - (self.clock() - last)
                while remaining > 0:
                    self.waits[venue] = self.waits.get(venue, 0) + 1
                    await self.sleep(remaining)
                    remaining = interval - (self.clock() - last)
            self._last_call[venue] = self.clock()

    def time_until_available(self, venue: str) -> float:
        last = self._last_call.get(venue)
        if last is None:
            return 0.0
        return max(0.0, self.interval_s(venue) - (self.clock() - last))

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            venue: {
                "min_interval_ms": int(self.interval_s(venue) * 1000),
                "wait_s": round(self.time_until_available(venue), 3),
                "waits": self.waits.get(venue, 0),
            }
            for venue in self._last_call
        }


@dataclass(frozen=True)
class AdmissionToken:
    """Proof that a saga holds the admission slots for its keys."""
    keys: Tuple[str, ...]
    holder: str
    acquired_at: float


class AdmissionControl:
    """Single-flight admission keyed by venue.

    A held key is rejected immediately with BusyError; nothing is queued.
    acquire() never awaits, so checking and claiming happen in one step on the
    event loop.
    """

    def __init__(self):
        self._held: Dict[str, AdmissionToken] = {}

    def acquire(self, keys: Iterable[str], holder: str) -> AdmissionToken:
        """Claim every key or none of them."""
        keys = tuple(dict.fromkeys(keys))
        for key in keys:
            current = self._held.get(key)
            if current is not None:
                raise BusyError(key, current.holder)

        token = AdmissionToken(keys=keys, holder=holder, acquired_at=time.time())
        for key in keys:
            self._held[key] = token
        logger.debug(f"Admission granted to {holder} for {', '.join(keys)}")
        return token

    def release(self, token: Optional[AdmissionToken]):
        """Release a token's keys. Safe to call more than once."""
        if token is None:
            return
        for key in token.keys:
            if self._held.get(key) is token:
                del self._held[key]
        logger.debug(f"Admission released by {token.holder}")

    def is_held(self, key: str) -> bool:
        return key in self._held

    def holder_of(self, key: str) -> Optional[str]:
        token = self._held.get(key)
        return token.holder if token else None

    @property
    def active_count(self) -> int:
        """Number of distinct holders."""
        return len({token.holder for token in self._held.values()})

    def snapshot(self) -> Dict[str, str]:
        return {key: token.holder for key, token in self._held.items()}


@dataclass
class _QueuedTask:
    seq: int
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    label: str
    enqueued_at: float


class ExecutionQueue:
    """FIFO per venue, drained by one worker per venue.

    Each operation waits for the venue's rate-limit slot, runs, and is followed
    by a small global delay before the worker takes the next item. Different
    venues drain concurrently.
    """

    def __init__(self, rate_limiter: RateLimiter, global_delay_ms: int = 100,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.rate_limiter = rate_limiter
        self.global_delay_s = global_delay_ms / 1000
        self.sleep = sleep
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._seq = itertools.count(1)
        self._running = False
        self.completed = 0
        self.failed = 0

    async def start(self):
        self._running = True

    async def stop(self):
        if not self._running and not self._workers:
            return
        self._running = False
        for task in self._workers.values():
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()

        # Anything still queued will never run
        for queue in self._queues.values():
            while not queue.empty():
                item = queue.get_nowait()
                if not item.future.done():
                    item.future.cancel()
        logger.info(f"Execution queue stopped ({self.completed} done, {self.failed} failed)")

    async def submit(self, venue: str, operation: Callable[[], Awaitable[Any]],
                     label: str = "") -> Any:
        """Queue an operation for a venue and wait for its result."""
        self._running = True
        loop = asyncio.get_running_loop()
        item = _QueuedTask(
            seq=next(self._seq),
            operation=operation,
            future=loop.create_future(),
            label=label or getattr(operation, "__name__", "operation"),
            enqueued_at=time.time(),
        )
        queue = self._queues.setdefault(venue, asyncio.Queue())
        await queue.put(item)
        self._ensure_worker(venue)
        return await item.future

    def _ensure_worker(self, venue: str):
        worker = self._workers.get(venue)
        if worker is None or worker.done():
            self._workers[venue] = asyncio.create_task(self._drain(venue))

    async def _drain(self, venue: str):
        queue = self._queues[venue]
        while self._running:
            item = await queue.get()
            if item.future.cancelled():
                continue

            await self.rate_limiter.wait_for_slot(venue)
            try:
                result = await item.operation()
            except asyncio.CancelledError:
                if not item.future.done():
                    item.future.cancel()
                raise
            except Exception as e:
                self.failed += 1
                logger.error(f"{venue} {item.label} failed: {e}")
                if not item.future.done():
                    item.future.set_exception(e)
            else:
                self.completed += 1
                if not item.future.done():
                    item.future.set_result(result)

            await self.sleep(self.global_delay_s)

    def get_status(self) -> Dict[str, Any]:
        pending: Dict[str, int] = {venue: q.qsize() for venue, q in self._queues.items()}
        return {
            "running": self._running,
            "pending": pending,
            "workers": [venue for venue, task in self._workers.items() if not task.done()],
            "completed": self.completed,
            "failed": self.failed,
        }

    def venue_states(self, admission: AdmissionControl, venues: List[str]) -> Dict[str, str]:
        """READY, BUSY (admission held or work queued) or COOLDOWN (spacing not elapsed)."""
        states = {}
        for venue in venues:
            queued = self._queues.get(venue)
            if admission.is_held(venue) or (queued is not None and queued.qsize() > 0):
                states[venue] = "BUSY"
            elif self.rate_limiter.time_until_available(venue) > 0:
                states[venue] = "COOLDOWN"
            else:
                states[venue] = "READY"
        return states
