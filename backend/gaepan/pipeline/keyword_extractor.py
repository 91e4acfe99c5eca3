"""Keyword extractor - seriousness gate + precedent search terms.

One short model call per submission.  The model answers with a single
line: either the skip token (frivolous / test input, no precedent lookup)
or 3–5 comma-separated Supreme Court case names.  Any failure degrades to
"no keywords"; extraction never blocks the pipeline.
"""

import asyncio
import logging
import re

from gaepan.config import (
    KEYWORD_TIMEOUT, KEYWORD_TEMPERATURE,
    KEYWORD_MAX_QUERIES, KEYWORD_MAX_QUERY_CHARS,
)
from gaepan.pipeline.llm_client import LLMCallError, TextGenerator
from gaepan.pipeline.schemas import DisputeSubmission, KeywordExtractionResult

logger = logging.getLogger(__name__)

SKIP_TOKEN = "SKIP"
_SKIP_SYNONYMS = {
    "skip", "skipped", "스킵", "없음", "해당없음", "해당 없음",
    "none", "n/a", "na", "-", "판례없음", "판례 없음",
}

# A bare case number is not a searchable case name
_BARE_CITATION_RE = re.compile(r"^\d{4}(?:도|다|가|나)\d+$")
_LIST_PREFIX_RE = re.compile(r"^(?:[-*•]|\d+[.)])\s*")

KEYWORD_SYSTEM_PROMPT = "\n".join([
    "너는 대한민국 대법원 판례 검색어를 고르는 법률 사서다.",
    "사건 내용을 읽고 아래 규칙에 따라 정확히 한 줄만 출력한다.",
    "",
    f"- 장난, 테스트, 의미 없는 글, 법적 쟁점이 전혀 없는 사소한 다툼이면 '{SKIP_TOKEN}' 한 단어만 출력한다.",
    "- 그 외에는 관련성이 높은 판례의 정확한 사건명 3~5개를 쉼표(,)로 구분해 출력한다.",
    "  예: 사기, 업무상횡령, 손해배상(기), 명예훼손",
    "- 사건번호(예: 2019도12345)는 출력하지 않는다. 사건명만 출력한다.",
    "- 설명, 번호, 따옴표, 마크다운을 붙이지 않는다.",
])


def _build_keyword_prompt(submission: DisputeSubmission) -> str:
    return "\n".join([
        f"사건 제목: {submission.title}",
        f"카테고리: {submission.category}",
        "사건 경위:",
        submission.details[:1500],
    ])


def parse_keyword_response(raw: str | None) -> KeywordExtractionResult:
    """Parse the one-line keyword answer.  Never raises."""
    if not raw:
        return KeywordExtractionResult()

    first_line = ""
    for line in raw.splitlines():
        stripped = line.strip().strip("`").strip()
        if stripped:
            first_line = stripped
            break
    if not first_line:
        return KeywordExtractionResult()

    normalized = first_line.strip(" .'\"").lower()
    if normalized in _SKIP_SYNONYMS or normalized == SKIP_TOKEN.lower():
        return KeywordExtractionResult(skip=True)

    queries: list[str] = []
    for token in re.split(r"[,，、]", first_line):
        t = _LIST_PREFIX_RE.sub("", token.strip()).strip(" '\"")
        if not t or _BARE_CITATION_RE.match(t.replace(" ", "")):
            continue
        t = t[:KEYWORD_MAX_QUERY_CHARS]
        if t not in queries:
            queries.append(t)
        if len(queries) >= KEYWORD_MAX_QUERIES:
            break

    return KeywordExtractionResult(
        skip=False,
        query_list=queries,
        primary_query=queries[0] if queries else None,
    )


async def extract_keywords(
    llm: TextGenerator | None,
    submission: DisputeSubmission,
    timeout: float = KEYWORD_TIMEOUT,
) -> KeywordExtractionResult:
    """Classify seriousness and pull case-name search terms.

    A timeout, call error, or unparseable answer yields an empty,
    non-skip result so the pipeline still runs without precedents.
    """
    if llm is None:
        return KeywordExtractionResult()

    try:
        raw = await asyncio.wait_for(
            llm.generate(
                KEYWORD_SYSTEM_PROMPT,
                _build_keyword_prompt(submission),
                temperature=KEYWORD_TEMPERATURE,
                expect_json=False,
                timeout=timeout,
                task_label="Keywords",
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(f"[Keywords] extraction timed out after {timeout:.0f}s, continuing without keywords")
        return KeywordExtractionResult()
    except LLMCallError as e:
        logger.warning(f"[Keywords] extraction failed: {e}, continuing without keywords")
        return KeywordExtractionResult()
    except Exception as e:
        logger.warning(f"[Keywords] unexpected {type(e).__name__}: {e}, continuing without keywords")
        return KeywordExtractionResult()

    result = parse_keyword_response(raw)
    if result.skip:
        logger.info("[Keywords] model marked submission as not needing precedents")
    else:
        logger.info(f"[Keywords] {len(result.query_list)} queries: {result.query_list}")
    return result
