"""
Change detection for the SMS store.

The SMS database cannot notify us of new rows, so a background task samples
its row count on a fixed interval and broadcasts fresh totals when the count
has grown. Decreases are ignored here: resets broadcast on their own.
"""

import asyncio
import enum
import logging
from typing import Optional

from pledge_tracker.aggregation import compute_totals
from pledge_tracker.broadcast import broadcast_totals
from pledge_tracker.metrics import record_poller_tick

logger = logging.getLogger(__name__)


class PollerState:
    """
    Last observed text pledge count, shared by the poller and the reset
    routes.

    reset() bumps epoch, so a tick that sampled before the reset cannot
    write its stale count back afterwards. All access happens on the event
    loop thread, between awaits.
    """

    def __init__(self):
        self.last_count = 0
        self.epoch = 0

    def reset(self) -> None:
        self.last_count = 0
        self.epoch += 1
        logger.info("Text pledge baseline reset to 0")

    def record(self, count: int, epoch: int) -> bool:
        """Commit count as the new baseline if it grew. Returns True if committed."""
        if epoch != self.epoch:
            logger.debug(f"Discarding sample {count} taken before a reset")
            return False
        if count <= self.last_count:
            return False
        self.last_count = count
        return True


class PollerStatus(str, enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"


class TextPledgePoller:
    def __init__(self, text_store, tier_store, state: PollerState, broadcaster,
                 interval: float = 5.0, goal_amount: int = 100_000_000):
        self.text_store = text_store
        self.tier_store = tier_store
        self.state = state
        self.broadcaster = broadcaster
        self.interval = interval
        self.goal_amount = goal_amount
        self.status = PollerStatus.IDLE
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> bool:
        """
        Sample the SMS store once. Returns True if new pledges were detected
        and a broadcast was attempted.

        Errors are logged and swallowed; the baseline is left untouched so
        the next tick compares against the last good count.
        """
        self.status = PollerStatus.CHECKING
        try:
            epoch = self.state.epoch
            try:
                count = await self.text_store.count()
            except Exception:
                logger.exception("Text pledge poll failed")
                record_poller_tick("error")
                return False

            previous = self.state.last_count
            if not self.state.record(count, epoch):
                record_poller_tick("no_change")
                return False

            logger.info(f"New text pledges detected: {previous} -> {count}")
            record_poller_tick("increase")
            try:
                snapshot = await compute_totals(self.tier_store, self.text_store, self.goal_amount)
            except Exception:
                logger.exception("Could not compute totals after new text pledges")
                return True
            await broadcast_totals(self.broadcaster, snapshot, source="poller")
            return True
        finally:
            self.status = PollerStatus.IDLE

    async def run(self) -> None:
        """Sleep, tick, repeat. Ticks run one at a time."""
        logger.info(f"Text pledge polling started (every {self.interval} seconds)")
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Text pledge polling stopped")
