"""
Rank/salary tiers and compensation plan constants.
Loads from Config (RANK_CONFIG, TEAM_INCOME_PERCENTAGES).
"""
from decimal import Decimal, InvalidOperation
from typing import List, NamedTuple
import logging

logger = logging.getLogger(__name__)


class RankTier(NamedTuple):
    """One rank: volume required on EACH leg and the monthly salary it pays."""
    order: int
    name: str
    threshold: Decimal
    salary: Decimal


def get_rank_config() -> List[RankTier]:
    """
    Get rank tiers from Config module, ordered by threshold ascending.

    Raises:
        ValueError: If RANK_CONFIG not loaded
    """
    from config import Config

    raw_config = Config.get(Config.RANK_CONFIG)

    if not raw_config:
        logger.error("RANK_CONFIG not loaded!")
        raise ValueError("RANK_CONFIG must be loaded before use")

    tiers = []
    for rank_data in raw_config:
        try:
            tiers.append((
                Decimal(str(rank_data["threshold"])),
                rank_data["name"],
                Decimal(str(rank_data["salary"])),
            ))
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            logger.error(f"Invalid rank configuration {rank_data!r}: {e}")
            continue

    tiers.sort(key=lambda t: t[0])
    return [
        RankTier(order=i + 1, name=name, threshold=threshold, salary=salary)
        for i, (threshold, name, salary) in enumerate(tiers)
    ]


# Lazy-loaded configuration cache
_RANK_CONFIG_CACHE: List[RankTier] = []


def get_rank_config_cached() -> List[RankTier]:
    """
    Get rank configuration with caching.
    Loads from Config on first access, then returns cached version.
    """
    global _RANK_CONFIG_CACHE

    if not _RANK_CONFIG_CACHE:
        _RANK_CONFIG_CACHE = get_rank_config()
        logger.info(f"Loaded RANK_CONFIG: {len(_RANK_CONFIG_CACHE)} ranks")

    return _RANK_CONFIG_CACHE


def reload_rank_config() -> None:
    """Drop the cache after Config.RANK_CONFIG changes."""
    global _RANK_CONFIG_CACHE
    _RANK_CONFIG_CACHE = []


# Public accessor - use this everywhere instead of a module constant
def RANK_CONFIG() -> List[RankTier]:
    """Get current rank configuration."""
    return get_rank_config_cached()


# Constants (these can stay hardcoded as they don't change)
TEAM_INCOME_MAX_LEVELS = 10
REFERRAL_CODE_DIGITS = 6
