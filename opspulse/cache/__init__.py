"""Pulse payload caching."""

from .backends import MemoryCache, RedisCache, SharedCache, build_shared_cache
from .pulse_cache import PulseCache, cache_key

__all__ = [
    "MemoryCache",
    "PulseCache",
    "RedisCache",
    "SharedCache",
    "build_shared_cache",
    "cache_key",
]
