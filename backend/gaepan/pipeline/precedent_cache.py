"""Precedent cache - learned reuse of precedent search results.

Two external tables back this module:
  - precedent_cache            query_key → reference block (or "not found")
  - precedent_keyword_success  single words that produced search hits

Both stores are injected, so tests (and deployments without Supabase) use
the in-memory implementations.  Store errors never break a verdict: a
failed read is a miss and a failed write is logged and dropped.
"""

import logging
import re
from datetime import datetime, timezone
from typing import NamedTuple, Protocol

import httpx

from gaepan.config import (
    SUPABASE_URL, SUPABASE_KEY, SUPABASE_ENABLED, SUPABASE_TIMEOUT,
    PREFERRED_KEYWORDS_LIMIT,
)
from gaepan.pipeline.schemas import DisputeSubmission, KeywordExtractionResult

logger = logging.getLogger(__name__)

# Stored in place of a block when a search ran and found nothing
NOT_FOUND_MARKER = "__NO_PRECEDENT__"

DETAILS_KEY_CHARS = 300


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...


class KeywordStore(Protocol):
    async def list(self, limit: int = PREFERRED_KEYWORDS_LIMIT) -> list[str]: ...

    async def append(self, word: str) -> None: ...


class CacheLookup(NamedTuple):
    hit: bool
    block: str | None = None


def build_cache_key(submission: DisputeSubmission, keywords: KeywordExtractionResult) -> str:
    """Normalized key: queries | case-type hint | title | first 300 chars of details."""
    parts = [
        ", ".join(keywords.query_list),
        submission.category,
        submission.title,
        submission.details[:DETAILS_KEY_CHARS],
    ]
    return re.sub(r"\s+", " ", " | ".join(parts)).strip()


# ═══════════════════════════════════════════════════
# In-memory stores
# ═══════════════════════════════════════════════════

class InMemoryKeyValueStore:
    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    def __len__(self):
        return len(self._data)


class InMemoryKeywordStore:
    """Append-only; ``list()`` returns most recent distinct words first."""

    def __init__(self, initial: list[str] | None = None):
        self._words: list[str] = list(initial or [])

    async def list(self, limit: int = PREFERRED_KEYWORDS_LIMIT) -> list[str]:
        out: list[str] = []
        for w in reversed(self._words):
            if w not in out:
                out.append(w)
            if len(out) >= limit:
                break
        return out

    async def append(self, word: str) -> None:
        self._words.append(word)


# ═══════════════════════════════════════════════════
# Supabase (PostgREST) stores
# ═══════════════════════════════════════════════════

class _SupabaseTable:
    def __init__(self, table: str, url: str = SUPABASE_URL, key: str = SUPABASE_KEY,
                 timeout: float = SUPABASE_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None):
        self.endpoint = f"{url.rstrip('/')}/rest/v1/{table}"
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }


class SupabaseKeyValueStore(_SupabaseTable):
    """``precedent_cache(query_key text primary key, result_text text, created_at timestamptz)``."""

    def __init__(self, **kwargs):
        super().__init__("precedent_cache", **kwargs)

    async def get(self, key: str) -> str | None:
        params = {"select": "result_text", "query_key": f"eq.{key}", "limit": "1"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(self.endpoint, params=params, headers=self.headers)
            response.raise_for_status()
            rows = response.json()
        if not rows:
            return None
        return rows[0].get("result_text")

    async def put(self, key: str, value: str) -> None:
        row = {
            "query_key": key,
            "result_text": value,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        headers = {**self.headers, "Prefer": "resolution=merge-duplicates,return=minimal"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                self.endpoint, params={"on_conflict": "query_key"}, json=row, headers=headers,
            )
            response.raise_for_status()


class SupabaseKeywordStore(_SupabaseTable):
    """``precedent_keyword_success(keyword text, created_at timestamptz default now())``."""

    def __init__(self, **kwargs):
        super().__init__("precedent_keyword_success", **kwargs)

    async def list(self, limit: int = PREFERRED_KEYWORDS_LIMIT) -> list[str]:
        params = {"select": "keyword", "order": "created_at.desc", "limit": str(limit)}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(self.endpoint, params=params, headers=self.headers)
            response.raise_for_status()
            rows = response.json()
        out: list[str] = []
        for r in rows if isinstance(rows, list) else []:
            kw = (r or {}).get("keyword")
            if kw and kw not in out:
                out.append(kw)
        return out

    async def append(self, word: str) -> None:
        headers = {**self.headers, "Prefer": "return=minimal"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.endpoint, json={"keyword": word}, headers=headers)
            response.raise_for_status()


# ═══════════════════════════════════════════════════
# Cache facade
# ═══════════════════════════════════════════════════

class PrecedentCache:
    """Get/set reference blocks and learn successful single-word queries.

    Usage:
        cache = PrecedentCache(InMemoryKeyValueStore(), InMemoryKeywordStore())
        lookup = await cache.get(key)
        if not lookup.hit:
            resolution = await resolver.resolve(...)
            if resolution.block is not None or resolution.complete:
                await cache.set(key, resolution.block)
    """

    def __init__(self, store: KeyValueStore, keyword_store: KeywordStore):
        self.store = store
        self.keyword_store = keyword_store

    async def get(self, key: str) -> CacheLookup:
        if not key:
            return CacheLookup(hit=False)
        try:
            value = await self.store.get(key)
        except Exception as e:
            logger.warning(f"[Cache] read failed, treating as miss: {e}")
            return CacheLookup(hit=False)
        if value is None:
            return CacheLookup(hit=False)
        if value == NOT_FOUND_MARKER:
            return CacheLookup(hit=True, block=None)
        return CacheLookup(hit=True, block=value)

    async def set(self, key: str, block: str | None) -> None:
        if not key:
            return
        try:
            await self.store.put(key, block if block else NOT_FOUND_MARKER)
        except Exception as e:
            logger.warning(f"[Cache] write failed: {e}")

    async def learn_keyword(self, word: str) -> None:
        w = (word or "").strip()
        if not w:
            return
        try:
            await self.keyword_store.append(w)
            logger.info(f"[Cache] learned preferred keyword '{w}'")
        except Exception as e:
            logger.warning(f"[Cache] keyword learn failed: {e}")

    async def preferred_keywords(self) -> list[str]:
        try:
            return await self.keyword_store.list(PREFERRED_KEYWORDS_LIMIT)
        except Exception as e:
            logger.warning(f"[Cache] preferred keyword read failed: {e}")
            return []


def build_precedent_cache() -> PrecedentCache:
    """Supabase-backed cache when configured, otherwise process-local memory."""
    if SUPABASE_ENABLED:
        return PrecedentCache(SupabaseKeyValueStore(), SupabaseKeywordStore())
    logger.info("SUPABASE_URL/key not set, precedent cache is in-memory only")
    return PrecedentCache(InMemoryKeyValueStore(), InMemoryKeywordStore())
