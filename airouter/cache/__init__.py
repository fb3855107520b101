"""Response Caching Layer.

Public API:
    CachePolicy       - Per-request-type caching rules
    DEFAULT_POLICIES  - Built-in policies for the cacheable request types
    cache_type_for    - Maps a routed request type to its cache type
    CacheEntry        - Stored response with generation metadata
    CacheLookup       - Result of ResponseCache.lookup()
    ResponseCache     - Exact and similarity-based response reuse
"""

from airouter.cache.policies import DEFAULT_POLICIES, CachePolicy, cache_type_for
from airouter.cache.response_cache import CacheEntry, CacheLookup, ResponseCache

__all__ = [
    "CachePolicy",
    "DEFAULT_POLICIES",
    "cache_type_for",
    "CacheEntry",
    "CacheLookup",
    "ResponseCache",
]
