"""
TTL configuration per data category.
"""
from datetime import date
from enum import Enum
from typing import Dict, Optional

from config.settings import Settings, settings as default_settings


class DataCategory(Enum):
    """Categories of cached data with different TTLs."""
    ENTITLEMENT_STATUS = "entitlement_status"     # 2 minutes
    PLAN_CATALOG = "plan_catalog"                 # 10 minutes
    SAVED_ITEMS = "saved_items"                   # 2 minutes
    CONFIRMATION_OUTCOME = "confirmation_outcome" # 30 seconds, success only


def ttl_config(config: Optional[Settings] = None) -> Dict[DataCategory, float]:
    """Build the category -> TTL seconds table from settings."""
    config = config or default_settings
    return {
        DataCategory.ENTITLEMENT_STATUS: config.entitlement_ttl_seconds,
        DataCategory.PLAN_CATALOG: config.plan_catalog_ttl_seconds,
        DataCategory.SAVED_ITEMS: config.saved_items_ttl_seconds,
        DataCategory.CONFIRMATION_OUTCOME: config.confirmation_outcome_ttl_seconds,
    }


def get_ttl_for_category(
    category: DataCategory,
    config: Optional[Settings] = None,
) -> float:
    """
    Get the TTL for a data category.

    Args:
        category: The data category
        config: Settings to read from (defaults to the module settings)

    Returns:
        TTL in seconds
    """
    table = ttl_config(config)
    return table.get(category, table[DataCategory.ENTITLEMENT_STATUS])


def crossed_day_boundary(stored_on: Optional[date], today: date) -> bool:
    """
    Check whether a value stored on `stored_on` predates today.

    Usage counters reset daily on the server, so anything cached on a
    previous calendar day must be refetched regardless of its TTL.
    """
    return stored_on is not None and stored_on != today
