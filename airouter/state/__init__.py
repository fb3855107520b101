"""Shared routing state.

Public API:
    StateStore          - Abstract base for all stores
    StoreResult         - Recoverable result of a best-effort operation
    RedisStateStore     - Redis-backed store for multi-process deployments
    InMemoryStateStore  - Dict-backed store for tests and single process
    get_state_store     - Factory: selects the store from settings
"""

from airouter.state.backend import (
    InMemoryStateStore,
    RedisStateStore,
    StoreResult,
    StateStore,
    get_state_store,
)

__all__ = [
    "StateStore",
    "StoreResult",
    "RedisStateStore",
    "InMemoryStateStore",
    "get_state_store",
]
