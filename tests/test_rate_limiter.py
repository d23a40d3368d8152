"""Test call spacing, admission and the execution queue."""

import asyncio
import pytest

from bridgearb.core.rate_limiter import AdmissionControl, ExecutionQueue, RateLimiter
from bridgearb.errors import BusyError
from tests.sample_data import FakeClock


class TestRateLimiter:
    """Test per-venue spacing."""

    def setup_method(self):
        self.clock = FakeClock(start=100.0)
        self.limiter = RateLimiter({"kraken": 200, "binance": 50, "default": 200},
                                   clock=self.clock, sleep=self.clock.sleep)

    @pytest.mark.asyncio
    async def test_consecutive_slots_spaced(self):
        """Consecutive slots for one venue are at least the minimum interval apart."""
        stamps = []
        for _ in range(4):
            await self.limiter.wait_for_slot("kraken")
            stamps.append(self.clock())

        gaps = [b - a for a, b in zip(stamps, stamps[1:])]
        assert all(gap >= 0.2 - 1e-9 for gap in gaps)

    @pytest.mark.asyncio
    async def test_concurrent_callers_serialized(self):
        stamps = []

        async def call():
            await self.limiter.wait_for_slot("binance")
            stamps.append(self.clock())

        await asyncio.gather(*(call() for _ in range(3)))
        stamps.sort()
        assert all(b - a >= 0.05 - 1e-9 for a, b in zip(stamps, stamps[1:]))

    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self):
        await self.limiter.wait_for_slot("okx")
        assert self.clock.sleeps == []
        assert self.limiter.interval_s("okx") == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_venues_independent(self):
        await self.limiter.wait_for_slot("kraken")
        await self.limiter.wait_for_slot("binance")
        assert self.clock.sleeps == []

    @pytest.mark.asyncio
    async def test_time_until_available(self):
        await self.limiter.wait_for_slot("kraken")
        assert self.limiter.time_until_available("kraken") == pytest.approx(0.2)
        self.clock.advance(0.3)
        assert self.limiter.time_until_available("kraken") == 0.0


class TestAdmissionControl:
    """Test single-flight admission."""

    def setup_method(self):
        self.admission = AdmissionControl()

    def test_second_acquire_rejected(self):
        self.admission.acquire(["binance", "kraken"], "swap-1")

        with pytest.raises(BusyError) as exc_info:
            self.admission.acquire(["kraken", "okx"], "swap-2")

        assert exc_info.value.key == "kraken"
        assert exc_info.value.holder == "swap-1"
        assert not self.admission.is_held("okx")

    def test_release_makes_keys_available(self):
        token = self.admission.acquire(["binance", "kraken"], "swap-1")
        self.admission.release(token)
        self.admission.release(token)

        assert self.admission.snapshot() == {}
        self.admission.acquire(["binance"], "swap-2")
        assert self.admission.holder_of("binance") == "swap-2"

    def test_active_count_counts_holders(self):
        self.admission.acquire(["binance", "kraken"], "swap-1")
        self.admission.acquire(["okx"], "swap-2")
        assert self.admission.active_count == 2


class TestExecutionQueue:
    """Test the per-venue FIFO workers."""

    def setup_method(self):
        self.limiter = RateLimiter({"default": 0})
        self.queue = ExecutionQueue(self.limiter, global_delay_ms=0)

    @pytest.mark.asyncio
    async def test_same_venue_runs_in_order(self):
        order = []

        def op(n):
            async def run():
                order.append(f"start-{n}")
                await asyncio.sleep(0)
                order.append(f"end-{n}")
                return n
            return run

        results = await asyncio.gather(*(self.queue.submit("kraken", op(n)) for n in range(3)))
        await self.queue.stop()

        assert results == [0, 1, 2]
        assert order == ["start-0", "end-0", "start-1", "end-1", "start-2", "end-2"]

    @pytest.mark.asyncio
    async def test_error_propagates_to_submitter(self):
        async def broken():
            raise RuntimeError("rejected by venue")

        with pytest.raises(RuntimeError, match="rejected by venue"):
            await self.queue.submit("kraken", broken)
        assert self.queue.failed == 1
        await self.queue.stop()

    @pytest.mark.asyncio
    async def test_venue_states(self):
        admission = AdmissionControl()
        admission.acquire(["kraken"], "swap-1")

        states = self.queue.venue_states(admission, ["kraken", "binance"])
        assert states == {"kraken": "BUSY", "binance": "READY"}
