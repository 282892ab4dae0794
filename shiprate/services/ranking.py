"""
Ranking & Recommendation Engine.

Rank score = price weight * priceRank + speed weight * speedRank, where
priceRank = cheapest.amount / option.amount and speedRank = 999 / ETA max
days. Options without an ETA count as 999 days so they sort last on speed.
Sorting is stable: equal scores keep catalog iteration order.
"""
from decimal import Decimal
from typing import List, Optional

from shiprate.config import settings
from shiprate.models.catalog import AutoPriority, SelectionMode
from shiprate.schemas.catalog import SellerPolicy
from shiprate.schemas.quote import QuoteOption

MISSING_ETA_DAYS = 999

TAG_CHEAPEST = "CHEAPEST"
TAG_FASTEST = "FASTEST"
TAG_RECOMMENDED = "RECOMMENDED"


class RankingResult:
    def __init__(self, options: List[QuoteOption], recommended: Optional[QuoteOption]):
        self.options = options
        self.recommended = recommended

    @property
    def recommended_option_id(self) -> Optional[str]:
        return self.recommended.option_id if self.recommended else None


def eta_days(option: QuoteOption) -> int:
    if option.eta_max_days is None or option.eta_max_days <= 0:
        return MISSING_ETA_DAYS
    return option.eta_max_days


def price_rank(cheapest_amount: Decimal, amount: Decimal) -> float:
    if amount <= 0:
        return 1.0
    return float(cheapest_amount / amount)


def speed_rank(option: QuoteOption) -> float:
    return MISSING_ETA_DAYS / eta_days(option)


def find_cheapest(options: List[QuoteOption]) -> QuoteOption:
    return min(options, key=lambda o: o.amount)


def find_fastest(options: List[QuoteOption]) -> QuoteOption:
    return min(options, key=eta_days)


def pick_recommended(
    cheapest: QuoteOption,
    fastest: QuoteOption,
    priority: AutoPriority,
    balanced_delta_percent: Decimal,
) -> QuoteOption:
    if priority == AutoPriority.PRICE:
        return cheapest
    if priority == AutoPriority.SPEED:
        return fastest
    ceiling = cheapest.amount * (1 + Decimal(str(balanced_delta_percent)) / Decimal("100"))
    return fastest if fastest.amount <= ceiling else cheapest


def rank_options(options: List[QuoteOption], policy: SellerPolicy) -> RankingResult:
    """Score, tag, sort and pick the recommendation for a set of options."""
    if not options:
        return RankingResult([], None)

    cheapest = find_cheapest(options)
    fastest = find_fastest(options)

    for option in options:
        option.rank_score = round(
            settings.RANK_PRICE_WEIGHT * price_rank(cheapest.amount, option.amount)
            + settings.RANK_SPEED_WEIGHT * speed_rank(option),
            6,
        )
        option.tags = []
        if option is cheapest:
            option.tags.append(TAG_CHEAPEST)
        if option is fastest:
            option.tags.append(TAG_FASTEST)

    ranked = sorted(options, key=lambda o: o.rank_score, reverse=True)

    if policy.selection_mode == SelectionMode.MANUAL_ONLY:
        return RankingResult(ranked, None)

    recommended = pick_recommended(
        cheapest, fastest, policy.auto_priority, policy.balanced_delta_percent
    )
    recommended.tags.append(TAG_RECOMMENDED)
    return RankingResult(ranked, recommended)
