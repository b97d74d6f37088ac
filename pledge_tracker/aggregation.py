"""
Pledge totals across both stores.

Totals are recomputed from the stores on every request and every
broadcast; nothing here is cached.
"""

import logging
from dataclasses import dataclass

from pledge_tracker.utils import dollars_to_cents, format_currency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TotalsSnapshot:
    """Paddle, text and grand totals in cents, plus goal progress."""

    paddle_total: int
    text_total: int
    goal_amount: int

    @property
    def grand_total(self) -> int:
        return self.paddle_total + self.text_total

    @property
    def goal_percentage(self) -> float:
        """Progress toward the goal, clamped to [0, 100]."""
        if self.goal_amount <= 0:
            return 0.0
        percentage = self.grand_total / self.goal_amount * 100
        return min(max(percentage, 0.0), 100.0)

    def to_payload(self) -> dict:
        """Shape shared by GET /api/totals and the totals_updated event."""
        return {
            "grandTotal": self.grand_total,
            "paddleTotal": self.paddle_total,
            "textTotal": self.text_total,
            "grandTotalFormatted": format_currency(self.grand_total),
            "paddleTotalFormatted": format_currency(self.paddle_total),
            "textTotalFormatted": format_currency(self.text_total),
            "goalPercentage": self.goal_percentage,
        }


async def compute_totals(tier_store, text_store, goal_amount: int) -> TotalsSnapshot:
    """
    Read both subtotals and combine them.

    Each text pledge is converted from dollars to cents on its own, the
    same way /api/text-pledges shows it, and only then summed.

    Raises:
        StoreError: either store failed
    """
    paddle_total = await tier_store.tier_subtotal()
    text_total = sum(dollars_to_cents(amount) for amount in await text_store.fetch_amounts())

    snapshot = TotalsSnapshot(
        paddle_total=paddle_total,
        text_total=text_total,
        goal_amount=goal_amount,
    )
    logger.debug(
        f"Totals computed: paddle={paddle_total}, text={text_total}, grand={snapshot.grand_total}"
    )
    return snapshot
