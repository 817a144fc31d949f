from datetime import timedelta
from typing import Optional, Union

from stoodio.models.users import RankingTier

# How long after a stoodio posts a job each tier has to wait before it
# shows up on their job board.
TIER_VISIBILITY_DELAYS: dict[RankingTier, timedelta] = {
    RankingTier.ELITE: timedelta(hours=0),
    RankingTier.PLATINUM: timedelta(hours=0),
    RankingTier.GOLD: timedelta(hours=1),
    RankingTier.SILVER: timedelta(hours=3),
    RankingTier.BRONZE: timedelta(hours=6),
    RankingTier.PROVISIONAL: timedelta(hours=12),
}


def parse_tier(tier: Union[RankingTier, str, None]) -> RankingTier:
    """Coerce a stored tier value; anything unrecognised counts as Provisional."""
    if isinstance(tier, RankingTier):
        return tier
    try:
        return RankingTier(tier)
    except ValueError:
        return RankingTier.PROVISIONAL


def visibility_delay(tier: Optional[Union[RankingTier, str]]) -> timedelta:
    return TIER_VISIBILITY_DELAYS[parse_tier(tier)]
