"""
Coin calculation for gift events.

coins = diamonds per unit * 2 * repeat count. Streakable gifts (gift type 1)
arrive several times during one combo with a growing repeat count; only the
terminal delivery (repeat ended) is counted, so a combo is accumulated once.
"""

from typing import Any

from ..models import GiftEvent
from ..normalization.resolvers import coerce_positive_int

COINS_PER_DIAMOND = 2

NON_STREAKABLE = 0
STREAKABLE = 1


def coins_value(diamonds_per_unit: int, repeat_count: Any = 1) -> int:
    """Coin value of a gift; a missing or non-numeric repeat count means 1."""
    diamonds = diamonds_per_unit or 0
    if diamonds <= 0:
        return 0
    return diamonds * COINS_PER_DIAMOND * coerce_positive_int(repeat_count)


def should_count(event: GiftEvent) -> bool:
    """Non-streakable gifts always count; streakable ones only once the streak ended."""
    return event.gift_type != STREAKABLE or event.repeat_ended is True


class CoinCalculator:
    """Fills the value fields of gift events."""

    def apply(self, event: GiftEvent) -> GiftEvent:
        event.repeat_count = coerce_positive_int(event.repeat_count)
        event.coins_value = coins_value(event.diamonds_per_unit, event.repeat_count)
        event.counted = should_count(event)
        return event
