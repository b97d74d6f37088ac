"""
Tests for the text pledge poller.

Tests cover:
- A count increase triggers exactly one broadcast
- Unchanged or lower counts do nothing
- Failed samples are swallowed and keep the last good baseline
- A reset during an in-flight tick is not undone by the stale sample
- After a reset, only a count above zero is reported
"""

import asyncio
from decimal import Decimal

from pledge_tracker.poller import PollerState, PollerStatus, TextPledgePoller
from pledge_tracker.storage import StoreError

from conftest import RecordingBroadcaster


class FakeTextStore:
    def __init__(self, counts, amounts=()):
        self.counts = list(counts)
        self.amounts = [Decimal(a) for a in amounts]

    async def count(self):
        value = self.counts.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch_amounts(self):
        return self.amounts


class FakeTierStore:
    def __init__(self, subtotal=0):
        self.subtotal = subtotal

    async def tier_subtotal(self):
        return self.subtotal


def make_poller(text_store, tier_store=None, state=None):
    broadcaster = RecordingBroadcaster()
    poller = TextPledgePoller(
        text_store=text_store,
        tier_store=tier_store or FakeTierStore(),
        state=state or PollerState(),
        broadcaster=broadcaster,
        interval=0.01,
        goal_amount=100_000_000,
    )
    return poller, broadcaster


class TestPollerTick:

    def test_increase_broadcasts(self):
        poller, broadcaster = make_poller(FakeTextStore([2], amounts=["35.50"]), FakeTierStore(10000))

        assert asyncio.run(poller.tick()) is True

        assert poller.state.last_count == 2
        assert len(broadcaster.messages) == 1
        topic, payload = broadcaster.messages[0]
        assert topic == "totals_updated"
        assert payload["textTotal"] == 3550
        assert payload["grandTotal"] == 13550

    def test_same_count_does_nothing(self):
        poller, broadcaster = make_poller(FakeTextStore([3, 3]))

        async def run():
            await poller.tick()
            return await poller.tick()

        assert asyncio.run(run()) is False
        assert len(broadcaster.messages) == 1
        assert poller.state.last_count == 3

    def test_decrease_does_nothing(self):
        state = PollerState()
        state.last_count = 5
        poller, broadcaster = make_poller(FakeTextStore([2]), state=state)

        assert asyncio.run(poller.tick()) is False
        assert broadcaster.messages == []
        assert state.last_count == 5

    def test_failed_sample_keeps_baseline(self):
        """Store errors are swallowed and the next good tick still sees the delta."""
        state = PollerState()
        state.last_count = 4
        poller, broadcaster = make_poller(
            FakeTextStore([StoreError("sms", "count"), 6]), state=state
        )

        async def run():
            first = await poller.tick()
            second = await poller.tick()
            return first, second

        assert asyncio.run(run()) == (False, True)
        assert state.last_count == 6
        assert len(broadcaster.messages) == 1

    def test_status_returns_to_idle(self):
        poller, _ = make_poller(FakeTextStore([RuntimeError("boom")]))

        asyncio.run(poller.tick())

        assert poller.status == PollerStatus.IDLE

    def test_totals_failure_is_swallowed(self):
        class BrokenTierStore:
            async def tier_subtotal(self):
                raise StoreError("primary", "tier_subtotal")

        poller, broadcaster = make_poller(FakeTextStore([1]), tier_store=BrokenTierStore())

        assert asyncio.run(poller.tick()) is True
        assert broadcaster.messages == []
        assert poller.state.last_count == 1


class TestPollerReset:

    def test_reset_during_tick_wins(self):
        """A sample taken before a reset must not re-inflate the baseline."""
        state = PollerState()
        state.last_count = 10

        class SlowTextStore(FakeTextStore):
            async def count(self):
                await self.gate.wait()
                return 11

        async def run():
            store = SlowTextStore([])
            store.gate = asyncio.Event()
            poller, broadcaster = make_poller(store, state=state)
            tick = asyncio.create_task(poller.tick())
            await asyncio.sleep(0)
            assert poller.status == PollerStatus.CHECKING
            state.reset()
            store.gate.set()
            return await tick, broadcaster

        detected, broadcaster = asyncio.run(run())

        assert detected is False
        assert state.last_count == 0
        assert broadcaster.messages == []

    def test_only_growth_above_zero_after_reset(self):
        state = PollerState()
        state.last_count = 8
        state.reset()
        poller, broadcaster = make_poller(FakeTextStore([0, 0, 1]), state=state)

        async def run():
            return [await poller.tick() for _ in range(3)]

        assert asyncio.run(run()) == [False, False, True]
        assert state.last_count == 1
        assert len(broadcaster.messages) == 1

    def test_record_rejects_stale_epoch(self):
        state = PollerState()
        epoch = state.epoch
        state.reset()

        assert state.record(3, epoch) is False
        assert state.record(3, state.epoch) is True
        assert state.last_count == 3


class TestPollerLoop:

    def test_run_ticks_until_stopped(self):
        poller, broadcaster = make_poller(FakeTextStore([1, 2] + [2] * 1000))

        async def wait_for_two_broadcasts():
            while len(broadcaster.messages) < 2:
                await asyncio.sleep(0.01)

        async def run():
            poller.start()
            await asyncio.wait_for(wait_for_two_broadcasts(), timeout=5)
            await poller.stop()

        asyncio.run(run())

        assert poller.state.last_count == 2
        assert len(broadcaster.messages) == 2
