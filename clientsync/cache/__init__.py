"""
Caching primitives: per-entry TTL cache and request coalescing.
"""
from .core import CacheEntry, CacheRead, CacheSource, TimedCache
from .ttl_policies import (
    DataCategory,
    ttl_config,
    get_ttl_for_category,
    crossed_day_boundary,
)
from .coalescer import RequestCoalescer

__all__ = [
    # Core types
    "CacheEntry",
    "CacheRead",
    "CacheSource",
    "TimedCache",
    # TTL policies
    "DataCategory",
    "ttl_config",
    "get_ttl_for_category",
    "crossed_day_boundary",
    # Coalescing
    "RequestCoalescer",
]
