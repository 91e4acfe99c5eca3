"""Precedent search via the 국가법령정보센터 (law.go.kr) open API.

A precedent only reaches the verdict prompt when all of these hold:
  1. LAW_GO_KR_OC is configured (OC issued by open.law.go.kr)
  2. The API call succeeds and returns a prec / Prec / 판례 / precList array
  3. A row has a case name plus at least one of case number, date or court

Otherwise the resolver yields no block and the verdict is written without
reference precedents.  A failed call raises PrecedentSearchError from the
client; the resolver absorbs it and marks the resolution incomplete, so a
timeout is never mistaken for "no precedent exists".

Search cascade (stops as soon as rows are found):
  1. Each extracted case-name query (or one query synthesized from the
     title + details when extraction produced none)
  2. The synthesized title + details query, if not already tried
  3. Single legal terms: learned preferred words first, then up to three
     well-known terms found in the text.  A single word that adds rows is
     reported through ``on_single_word_success`` so it can be learned.
"""

import json
import logging
import re
from typing import Awaitable, Callable, Protocol

import httpx

from gaepan.config import (
    LAW_GO_KR_OC, LAW_API_BASE, PRECEDENT_LIMIT,
    PRECEDENT_SEARCH_TIMEOUT, PRECEDENT_SEARCH_DISPLAY,
)
from gaepan.pipeline.schemas import DisputeSubmission, PrecedentRecord, PrecedentResolution

logger = logging.getLogger(__name__)

ORG_SUPREME_COURT = "400201"   # 대법원 판례만
SEARCH_BY_NAME = 1             # 사건명 검색
SEARCH_BY_BODY = 2             # 본문 검색

BLOCK_HEADER = "---참조 판례 (국가법령정보센터 실시간 검색) ---"
BLOCK_FOOTER = "---위 판례를 인용·적용하여 rationale에 논증하라---"

# Single terms common in Supreme Court case names: tried when nothing else hits
SINGLE_WORD_QUERIES = [
    "사기", "배임", "횡령", "상해", "과실치사", "명예훼손", "모욕",
    "손해배상", "협박", "폭행", "절도", "강도", "살인", "교통사고",
    "업무상과실", "부작위", "정당방위", "공동정범", "불법행위",
]
MAX_TEXT_SINGLE_WORDS = 3

SingleWordCallback = Callable[[str], Awaitable[None]]


class PrecedentSearchError(Exception):
    """The search service could not be queried or answered unreadably."""


class PrecedentSearchClient(Protocol):
    enabled: bool

    async def search(self, query: str, limit: int, mode: int = SEARCH_BY_NAME) -> list[PrecedentRecord]: ...


def _parse_prec_list(data) -> list:
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []
    # The API nests results under PrecSearch on some endpoints
    if isinstance(data.get("PrecSearch"), dict):
        data = data["PrecSearch"]
    for key in ("prec", "Prec", "판례", "precList"):
        items = data.get(key)
        if isinstance(items, list):
            return items
        if isinstance(items, dict):      # single hit comes back as an object
            return [items]
    return []


def _to_record(item) -> PrecedentRecord | None:
    if not isinstance(item, dict):
        return None

    def _field(*names: str) -> str:
        for n in names:
            v = item.get(n)
            if v is not None and str(v).strip():
                return str(v).strip()
        return ""

    name = _field("사건명", "caseNm")
    no = _field("사건번호", "caseNo")
    date = _field("선고일자", "선고일", "jugdDe")
    court = _field("법원명", "courtNm")
    if not name or name == "-":
        return None
    if not (no or date or court):
        return None
    return PrecedentRecord(name=name, case_no=no, date=date, court=court)


class LawGoKrSearchClient:
    """Thin httpx client for ``lawSearch.do?target=prec``."""

    def __init__(self, oc: str = LAW_GO_KR_OC, base_url: str = LAW_API_BASE,
                 timeout: float = PRECEDENT_SEARCH_TIMEOUT,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.oc = oc
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.oc)

    async def search(self, query: str, limit: int, mode: int = SEARCH_BY_NAME) -> list[PrecedentRecord]:
        if not self.enabled or not query.strip():
            return []
        params = {
            "OC": self.oc,
            "target": "prec",
            "type": "JSON",
            "query": query,
            "search": str(mode),
            "org": ORG_SUPREME_COURT,
            "display": str(min(max(limit, 15), PRECEDENT_SEARCH_DISPLAY)),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(
                    self.base_url, params=params, headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                raw = response.text
        except httpx.HTTPError as e:
            raise PrecedentSearchError(f"search '{query[:40]}' (mode {mode}) failed: {e}") from e
        if not raw or not raw.strip():
            raise PrecedentSearchError(f"empty response for '{query[:40]}'")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PrecedentSearchError(f"non-JSON response for '{query[:40]}'") from e
        return [r for r in (_to_record(p) for p in _parse_prec_list(data)) if r]


def synthesize_query(title: str, details: str, max_detail_chars: int = 350) -> str:
    """One search line from the title and the start of the details (≤100 chars)."""
    combined = f"{(title or '').strip()} {(details or '').strip()[:max_detail_chars]}"
    combined = re.sub(r"\s+", " ", combined).strip()
    return combined[:100] or "판례"


def pick_single_words(text: str) -> list[str]:
    out: list[str] = []
    for w in SINGLE_WORD_QUERIES:
        if w in (text or ""):
            out.append(w)
            if len(out) >= MAX_TEXT_SINGLE_WORDS:
                break
    return out


def format_precedent_block(rows: list[PrecedentRecord], limit: int = PRECEDENT_LIMIT) -> str | None:
    if not rows:
        return None
    lines = [r.to_line(i + 1) for i, r in enumerate(rows[:limit])]
    return "\n".join([BLOCK_HEADER, *lines, BLOCK_FOOTER])


class PrecedentResolver:
    """Runs the search cascade and assembles a bounded reference block."""

    def __init__(self, client: PrecedentSearchClient, limit: int = PRECEDENT_LIMIT):
        self.client = client
        self.limit = limit

    async def _collect(
        self, query: str, rows: list[PrecedentRecord], seen: set[str], failures: list[str],
    ) -> int:
        """Search one query in both modes; returns how many new rows were added.

        Failed calls are appended to *failures* and otherwise skipped.
        """
        added = 0
        for mode in (SEARCH_BY_NAME, SEARCH_BY_BODY):
            if len(rows) >= self.limit:
                break
            try:
                found = await self.client.search(query, self.limit, mode)
            except Exception as e:
                logger.info(f"[Precedent] '{query[:40]}' (mode {mode}) raised {type(e).__name__}: {e}")
                failures.append(query)
                continue
            for rec in found:
                if rec.dedup_key in seen:
                    continue
                seen.add(rec.dedup_key)
                rows.append(rec)
                added += 1
        return added

    async def resolve(
        self,
        submission: DisputeSubmission,
        queries: list[str],
        preferred_words: list[str] | None = None,
        on_single_word_success: SingleWordCallback | None = None,
    ) -> PrecedentResolution:
        if not self.client.enabled:
            logger.info("[Precedent] search client disabled, no lookup")
            return PrecedentResolution(block=None, complete=False)

        rows: list[PrecedentRecord] = []
        seen: set[str] = set()
        failures: list[str] = []

        fallback_query = synthesize_query(submission.title, submission.details)
        candidates = [q[:60].strip() for q in queries if q and q.strip()] or [fallback_query[:60].strip()]

        for q in candidates:
            await self._collect(q, rows, seen, failures)
            if len(rows) >= self.limit:
                break

        if not rows and fallback_query[:60].strip() not in candidates:
            await self._collect(fallback_query[:80], rows, seen, failures)

        single_words: list[str] = []
        if not rows:
            text = f"{' '.join(queries)} {submission.title} {submission.details[:200]}"
            for w in (preferred_words or []) + pick_single_words(text):
                if w and w not in single_words:
                    single_words.append(w)
            for w in single_words:
                added = await self._collect(w, rows, seen, failures)
                if added and on_single_word_success is not None:
                    await on_single_word_success(w)
                if len(rows) >= self.limit:
                    break

        complete = not failures
        if not rows:
            logger.info(
                f"[Precedent] 0 results (queries={candidates}, single words={single_words}, "
                f"failed calls={len(failures)})"
            )
            return PrecedentResolution(block=None, complete=complete)

        logger.info(f"[Precedent] {min(len(rows), self.limit)} precedent(s) assembled")
        return PrecedentResolution(block=format_precedent_block(rows, self.limit), complete=complete)
