"""Response cache - reuse of previously generated answers.

Entries are keyed on SHA-256 of (request type, prompt, key-sorted JSON
context), so identical requests never reach a provider twice while the
policy TTL lasts. Types whose policy enables smart matching also accept a
near-duplicate prompt: on an exact miss the most recent entries of the
same request type are scanned and the first one whose word-set Jaccard
similarity reaches the policy threshold is reused.

The similarity scan is bounded: each request type keeps a recency index
of its most recently stored or hit keys, capped at
``cache_similarity_scan_limit``. A hit moves its key to the front and slides
the index TTL along with the entry TTL.

Every backend failure is logged and reported as a miss (lookup) or a
failed StoreResult (store); the cache never raises into the routing path.
"""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from airouter.cache.policies import DEFAULT_POLICIES, CachePolicy
from airouter.exceptions import StateStoreError
from airouter.state import StateStore, StoreResult

log = structlog.get_logger(__name__)

_ENTRY_NS = "ai_cache"
_INDEX_NS = "ai_cache_index"
STATS_KEY = "ai_cache_stats"
_STATS_TTL = 86_400

_NON_WORD = re.compile(r"[^\w\s]")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def canonical_context(context: dict[str, Any] | None) -> str:
    return json.dumps(context or {}, sort_keys=True, separators=(",", ":"), default=str)


def tokenize(prompt: str) -> set[str]:
    """Lowercase, strip punctuation, split on whitespace, drop words of 2 chars or fewer."""
    cleaned = _NON_WORD.sub("", prompt.lower())
    return {word for word in cleaned.split() if len(word) > 2}


def jaccard(left: set[str], right: set[str]) -> float:
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


@dataclass
class CacheEntry:
    """One cached response with its generation metadata."""

    key: str
    request_type: str
    prompt: str
    prompt_hash: str
    response: Any
    metadata: dict[str, Any]
    ttl: int
    tags: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: f"cache_{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=_utcnow)
    last_accessed: datetime = field(default_factory=_utcnow)
    access_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "request_type": self.request_type,
            "prompt": self.prompt,
            "prompt_hash": self.prompt_hash,
            "response": self.response,
            "metadata": self.metadata,
            "ttl": self.ttl,
            "tags": list(self.tags),
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "access_count": self.access_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            id=data["id"],
            key=data["key"],
            request_type=data["request_type"],
            prompt=data["prompt"],
            prompt_hash=data["prompt_hash"],
            response=data["response"],
            metadata=data.get("metadata", {}),
            ttl=data["ttl"],
            tags=data.get("tags", []),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_accessed=datetime.fromisoformat(data["last_accessed"]),
            access_count=data.get("access_count", 0),
        )

    def savings(self) -> dict[str, float]:
        return {
            "tokens": self.metadata.get("tokens_used", 0),
            "cost": self.metadata.get("cost", 0.0),
            "response_time_ms": self.metadata.get("response_time_ms", 0),
        }


@dataclass
class CacheLookup:
    """Result of a cache lookup. ``error`` is set when the backend failed."""

    hit: bool
    response: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)
    savings: dict[str, float] = field(default_factory=dict)
    similarity: float | None = None
    entry_id: str | None = None
    error: str | None = None


def empty_stats() -> dict[str, Any]:
    return {
        "total_entries": 0,
        "hits": 0,
        "misses": 0,
        "hit_rate": 0.0,
        "total_savings": {"tokens": 0, "cost": 0.0, "response_time_ms": 0},
        "by_type": {},
    }


class ResponseCache:
    """Policy-driven response cache over the shared state store.

    Args:
        store: Shared state store
        policies: Request type -> policy; defaults to DEFAULT_POLICIES
        scan_limit: Most recent entries per type considered for smart hits
        clock: UTC clock, injectable for tests
    """

    def __init__(
        self,
        store: StateStore,
        *,
        policies: dict[str, CachePolicy] | None = None,
        scan_limit: int = 200,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self._scan_limit = scan_limit
        self._clock = clock

    # ------------------------------------------------------------------
    # Key helpers
    # ------------------------------------------------------------------

    def policy_for(self, request_type: str) -> CachePolicy | None:
        return self._policies.get(request_type)

    @staticmethod
    def cache_key(request_type: str, prompt: str, context: dict[str, Any] | None) -> str:
        raw = f"{request_type}:{prompt}:{canonical_context(context)}"
        digest = hashlib.sha256(raw.encode()).hexdigest()
        return f"{_ENTRY_NS}:{request_type}:{digest}"

    @staticmethod
    def prompt_hash(prompt: str, context: dict[str, Any] | None) -> str:
        raw = f"{prompt}:{canonical_context(context)}"
        return hashlib.md5(raw.encode(), usedforsecurity=False).hexdigest()

    @staticmethod
    def _index_key(request_type: str) -> str:
        return f"{_INDEX_NS}:{request_type}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def lookup(
        self,
        request_type: str,
        prompt: str,
        context: dict[str, Any] | None = None,
    ) -> CacheLookup:
        """Return a cached response for the request, if policy allows reuse."""
        policy = self.policy_for(request_type)
        if policy is None:
            log.debug("cache.no_policy", request_type=request_type)
            return CacheLookup(hit=False)

        try:
            key = self.cache_key(request_type, prompt, context)
            entry: CacheEntry | None = None
            similarity = 1.0
            raw = await self._store.get(key)
            if raw is not None:
                entry = CacheEntry.from_dict(raw)
            elif policy.allows_similarity:
                entry, similarity = await self._find_similar(request_type, prompt, policy)

            if entry is None:
                await self._update_stats(request_type, hit=False)
                log.debug("cache.miss", request_type=request_type)
                return CacheLookup(hit=False)

            entry.last_accessed = self._clock()
            entry.access_count += 1
            await self._store.set(entry.key, entry.to_dict(), ttl=entry.ttl)
            if policy.allows_similarity:
                await self._push_index(request_type, entry.key, entry.ttl)
            await self._update_stats(request_type, hit=True, entry=entry)
        except StateStoreError as exc:
            log.warning("cache.lookup_failed", request_type=request_type, error=str(exc))
            return CacheLookup(hit=False, error=str(exc))

        log.info(
            "cache.hit",
            request_type=request_type,
            entry_id=entry.id,
            similarity=round(similarity, 3),
            access_count=entry.access_count,
        )
        return CacheLookup(
            hit=True,
            response=entry.response,
            metadata=entry.metadata,
            savings=entry.savings(),
            similarity=similarity,
            entry_id=entry.id,
        )

    async def store(
        self,
        request_type: str,
        prompt: str,
        context: dict[str, Any] | None,
        response: Any,
        metadata: dict[str, Any],
    ) -> StoreResult:
        """Cache a generated response under the request type's policy.

        Args:
            request_type: Request type the response answers
            prompt: Prompt text
            context: Structured context that was part of the request
            response: Response payload (must be JSON-serialisable)
            metadata: Generation metadata: provider, model, tokens_used,
                cost, response_time_ms, accuracy, user_tier

        Returns:
            StoreResult with the entry key, or a failure (no policy / backend error)
        """
        policy = self.policy_for(request_type)
        if policy is None:
            log.debug("cache.store_skipped", request_type=request_type, reason="no_policy")
            return StoreResult.failure("no cache policy for request type")

        key = self.cache_key(request_type, prompt, context)
        entry = CacheEntry(
            key=key,
            request_type=request_type,
            prompt=prompt,
            prompt_hash=self.prompt_hash(prompt, context),
            response=response,
            metadata=dict(metadata),
            ttl=policy.ttl,
            tags=list(policy.tags),
            created_at=self._clock(),
            last_accessed=self._clock(),
        )
        try:
            await self._store.set(key, entry.to_dict(), ttl=policy.ttl)
            await self._push_index(request_type, key, policy.ttl)
            await self._update_stats(request_type, stored=True)
        except StateStoreError as exc:
            log.warning("cache.store_failed", request_type=request_type, error=str(exc))
            return StoreResult.failure(str(exc))

        log.debug("cache.stored", request_type=request_type, entry_id=entry.id, ttl=policy.ttl)
        return StoreResult.success(key)

    async def stats(self) -> dict[str, Any]:
        try:
            return await self._store.get(STATS_KEY) or empty_stats()
        except StateStoreError as exc:
            log.warning("cache.stats_failed", error=str(exc))
            return empty_stats()

    async def clear(self, request_type: str | None = None) -> int:
        """Delete cached entries (all types, or one). Returns the deleted count."""
        pattern = f"{_ENTRY_NS}:{request_type}:*" if request_type else f"{_ENTRY_NS}:*"
        index_pattern = f"{_INDEX_NS}:{request_type}" if request_type else f"{_INDEX_NS}:*"
        try:
            keys = await self._store.keys(pattern)
            for key in keys:
                await self._store.delete(key)
            for key in await self._store.keys(index_pattern):
                await self._store.delete(key)
        except StateStoreError as exc:
            log.warning("cache.clear_failed", request_type=request_type, error=str(exc))
            return 0
        log.info("cache.cleared", request_type=request_type, deleted=len(keys))
        return len(keys)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _find_similar(
        self,
        request_type: str,
        prompt: str,
        policy: CachePolicy,
    ) -> tuple[CacheEntry | None, float]:
        words = tokenize(prompt)
        index = await self._store.get(self._index_key(request_type)) or []
        for key in index[: self._scan_limit]:
            raw = await self._store.get(key)
            if raw is None:
                continue  # expired since it was indexed
            entry = CacheEntry.from_dict(raw)
            similarity = jaccard(words, tokenize(entry.prompt))
            if similarity >= policy.similarity_threshold:
                log.debug(
                    "cache.similar_found",
                    request_type=request_type,
                    entry_id=entry.id,
                    similarity=round(similarity, 3),
                )
                return entry, similarity
        return None, 0.0

    async def _push_index(self, request_type: str, key: str, ttl: int) -> None:
        index_key = self._index_key(request_type)
        async with self._store.lock(index_key):
            index = await self._store.get(index_key) or []
            index = [key] + [k for k in index if k != key]
            await self._store.set(index_key, index[: max(self._scan_limit, 1)], ttl=ttl)

    async def _update_stats(
        self,
        request_type: str,
        *,
        hit: bool = False,
        stored: bool = False,
        entry: CacheEntry | None = None,
    ) -> None:
        async with self._store.lock(STATS_KEY):
            stats = await self._store.get(STATS_KEY) or empty_stats()
            by_type = stats["by_type"].setdefault(
                request_type, {"entries": 0, "hits": 0, "misses": 0, "savings_cost": 0.0}
            )
            if stored:
                stats["total_entries"] += 1
                by_type["entries"] += 1
            elif hit:
                stats["hits"] += 1
                by_type["hits"] += 1
                if entry is not None:
                    saved = entry.savings()
                    stats["total_savings"]["tokens"] += saved["tokens"]
                    stats["total_savings"]["cost"] += saved["cost"]
                    stats["total_savings"]["response_time_ms"] += saved["response_time_ms"]
                    by_type["savings_cost"] += saved["cost"]
            else:
                stats["misses"] += 1
                by_type["misses"] += 1
            lookups = stats["hits"] + stats["misses"]
            stats["hit_rate"] = round(stats["hits"] / lookups, 4) if lookups else 0.0
            await self._store.set(STATS_KEY, stats, ttl=_STATS_TTL)
