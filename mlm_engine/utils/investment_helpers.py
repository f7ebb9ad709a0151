# mlm_engine/utils/investment_helpers.py
"""
Helper functions for investment packages: profit-rate tiers and lock dates.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from config import Config
from mlm_engine.utils.time_machine import add_months

logger = logging.getLogger(__name__)


def get_rate_tiers() -> Dict[Decimal, Decimal]:
    """
    Get profit-rate tiers from config.

    Returns:
        Dict mapping minimum principal to monthly rate in percent
    """
    tiers = Config.get(Config.PROFIT_RATE_TIERS, {})

    if not tiers:
        logger.warning("No profit rate tiers configured")
        return {}

    return tiers


def get_sorted_tiers() -> List[Decimal]:
    """Sorted list of tier thresholds (ascending)."""
    return sorted(get_rate_tiers().keys())


def get_tier_percentage(principal: Decimal) -> Decimal:
    """
    Get monthly profit rate (percent) for given principal.
    Returns the highest tier rate that applies, 0 below the first tier.

    Example:
        get_tier_percentage(Decimal("50")) -> Decimal("0")
        get_tier_percentage(Decimal("500")) -> Decimal("12")
        get_tier_percentage(Decimal("1500")) -> Decimal("15")
    """
    tiers = get_rate_tiers()
    applicable = Decimal("0")

    for tier_amount in get_sorted_tiers():
        if principal >= tier_amount:
            applicable = tiers[tier_amount]
        else:
            break

    return applicable


def get_tier_info(principal: Decimal) -> Dict[str, Optional[Decimal]]:
    """
    Current and next tier for a principal amount.

    Returns:
        Dict with currentRate, nextThreshold, nextRate (None at the top tier)
    """
    tiers = get_rate_tiers()
    current = get_tier_percentage(principal)
    next_threshold = None

    for tier_amount in get_sorted_tiers():
        if principal < tier_amount:
            next_threshold = tier_amount
            break

    return {
        "currentRate": current,
        "nextThreshold": next_threshold,
        "nextRate": tiers[next_threshold] if next_threshold is not None else None,
    }


def package_name(principal: Decimal) -> str:
    rate = get_tier_percentage(principal)
    return f"{rate.normalize():f}% monthly"


def unlock_date_for(start: datetime, lock_months: int = None) -> datetime:
    """Start date plus the lock period."""
    if lock_months is None:
        lock_months = int(Config.get(Config.LOCK_PERIOD_MONTHS, 6))
    return add_months(start, lock_months)
