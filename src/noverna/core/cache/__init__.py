"""
Cache subsystem for Noverna Core.

Exports the fail-open Redis adapter used by every storage.
"""

from noverna.core.cache.service import CacheService

__all__ = [
    "CacheService",
]
