"""Pipeline orchestrator - sequences one verdict request.

  Stage 1 → Input check (injection / forbidden content → reject, no external call)
  Stage 2 → Keyword extraction (seriousness gate + case-name queries)
  Stage 3 → Precedent cache, or resolver on a miss (then cache write)
  Stage 4 → Verdict synthesis (bounded retries)
  Stage 5 → Sanitize: scrub leaks, redact unlisted citations, repair
            conclusion and ratio/text consistency
  Stage 6 → Mock fallback when no model is configured or retries run out

Stages run strictly in order; each external call is an await point, and
nothing inside one request overlaps.  Concurrent requests share only the
external cache and keyword stores.
"""

import logging

from gaepan.pipeline.keyword_extractor import extract_keywords
from gaepan.pipeline.llm_client import TextGenerator, get_text_generator
from gaepan.pipeline.mock_verdict import build_mock_verdict
from gaepan.pipeline.precedent_cache import (
    PrecedentCache, build_cache_key, build_precedent_cache,
)
from gaepan.pipeline.precedent_search import LawGoKrSearchClient, PrecedentResolver
from gaepan.pipeline.sanitizer import (
    contains_forbidden_content, detect_injection, enforce_consistency,
    ensure_conclusion, ensure_rationale, extract_citations,
    sanitize_citations, scrub_injection,
)
from gaepan.pipeline.schemas import (
    DisputeSubmission, KeywordExtractionResult, Ratio, Verdict, VerdictOutcome,
)
from gaepan.pipeline.verdict_synthesizer import AttemptState, VerdictSynthesizer

logger = logging.getLogger(__name__)


class SubmissionRejected(ValueError):
    """The submission is refused before the pipeline runs."""


def check_submission(submission: DisputeSubmission) -> None:
    """Raise SubmissionRejected for injection attempts or forbidden content."""
    fields = [submission.title, submission.details, submission.plaintiff, submission.defendant]
    if any(detect_injection(f) for f in fields):
        raise SubmissionRejected("허용되지 않는 지시문이 포함된 사건은 접수할 수 없습니다.")
    if any(contains_forbidden_content(f) for f in fields):
        raise SubmissionRejected("욕설·혐오·광고성 내용이 포함된 사건은 판결할 수 없습니다.")


def finalize_verdict(verdict: Verdict, precedent_block: str | None) -> Verdict:
    """Sanitize and reconcile a verdict.  Safe to apply to mock output too."""
    allowed = extract_citations(precedent_block) if precedent_block else None

    cleaned = Verdict(
        title=sanitize_citations(scrub_injection(verdict.title), allowed),
        ratio=Ratio(
            plaintiff=verdict.ratio.plaintiff,
            defendant=verdict.ratio.defendant,
            rationale=sanitize_citations(scrub_injection(verdict.ratio.rationale), allowed),
        ),
        verdict=sanitize_citations(scrub_injection(verdict.verdict), allowed),
    )
    cleaned = ensure_rationale(cleaned)
    cleaned = ensure_conclusion(cleaned)
    return enforce_consistency(cleaned)


class VerdictPipeline:
    """Runs ``generate_verdict`` for one submission at a time.

    Usage:
        pipeline = VerdictPipeline.from_config()
        outcome = await pipeline.generate_verdict(submission)
    """

    def __init__(
        self,
        llm: TextGenerator | None,
        cache: PrecedentCache,
        resolver: PrecedentResolver,
        synthesizer: VerdictSynthesizer | None = None,
    ):
        self.llm = llm
        self.cache = cache
        self.resolver = resolver
        if synthesizer is None and llm is not None:
            synthesizer = VerdictSynthesizer(llm)
        self.synthesizer = synthesizer

    @classmethod
    def from_config(cls) -> "VerdictPipeline":
        llm = get_text_generator()
        return cls(
            llm=llm,
            cache=build_precedent_cache(),
            resolver=PrecedentResolver(LawGoKrSearchClient()),
        )

    async def _lookup_precedents(
        self, submission: DisputeSubmission, keywords: KeywordExtractionResult,
    ) -> str | None:
        key = build_cache_key(submission, keywords)
        lookup = await self.cache.get(key)
        if lookup.hit:
            logger.info(f"[Pipeline] precedent cache hit ({'block' if lookup.block else 'known empty'})")
            return lookup.block

        preferred = await self.cache.preferred_keywords()
        resolution = await self.resolver.resolve(
            submission,
            keywords.query_list,
            preferred_words=preferred,
            on_single_word_success=self.cache.learn_keyword,
        )
        # "Known empty" is only recorded when every search call actually ran
        if resolution.block is not None or resolution.complete:
            await self.cache.set(key, resolution.block)
        else:
            logger.info("[Pipeline] precedent search incomplete, result not cached")
        return resolution.block

    async def generate_verdict(self, submission: DisputeSubmission) -> VerdictOutcome:
        check_submission(submission)

        if self.synthesizer is None:
            logger.info("[Pipeline] no verdict model configured, using mock verdict")
            return VerdictOutcome(verdict=finalize_verdict(build_mock_verdict(submission), None), mock=True)

        keywords = await extract_keywords(self.llm, submission)

        precedent_block = None
        if keywords.skip:
            logger.info("[Pipeline] precedent lookup skipped")
        else:
            precedent_block = await self._lookup_precedents(submission, keywords)

        result = await self.synthesizer.synthesize(submission, precedent_block)
        if result.state is AttemptState.SUCCESS and result.verdict is not None:
            verdict = finalize_verdict(result.verdict, precedent_block)
            return VerdictOutcome(verdict=verdict, mock=False, precedent_used=precedent_block is not None)

        logger.warning(f"[Pipeline] model unavailable after {result.attempts} attempt(s), mock verdict")
        return VerdictOutcome(verdict=finalize_verdict(build_mock_verdict(submission), None), mock=True)
