"""Verdict sanitizer - pure text checks and repairs.

No I/O here.  Every function takes text (or a Verdict) and returns a new
value, so the whole module can be exercised without a model or network:

  - Prompt-injection / prompt-leak detection (input rejection + output scrub)
  - Case-number normalization and citation allow-listing
  - Disposition ↔ fault-ratio reconciliation
  - Truncated-conclusion repair
"""

import re
import unicodedata

from gaepan.pipeline.schemas import Verdict

# ── Fixed phrases ─────────────────────────────────────────────────
VERDICT_LEAD = "주문: 본 법정은 다음과 같이 선고한다."
LEAD_ANCHOR = "선고한다."
NOT_GUILTY_STATEMENT = "피고인 무죄. 불기소."
GUILTY_STATEMENT = "피고인 유죄."
REDACTION_MARKER = "[확인되지 않은 판례 인용 삭제]"
SAFE_TEXT_PLACEHOLDER = "상세 판결 근거를 불러올 수 없습니다."

# Defendant fault assigned when the text asserts guilt but the ratio does not
GUILTY_MIN_DEFENDANT = 55


# ═══════════════════════════════════════════════════
# Injection detection
# ═══════════════════════════════════════════════════

_INJECTION_MARKERS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\[CORE_PROMPT_START\]",
        r"\[CORE_PROMPT_END\]",
        r"\[INSTRUCTIONS_FOR_ADOPTION\]",
        r"MODIFIABLE\s*=\s*REALTIME_CONTEXT",
        r"PERMISSIONS\s*=\s*FULL_ACCESS",
        r"STATE\s*=\s*ACTIVE",
        r"VERSION\s*=\s*FINAL",
        r"PURPOSE\s*=\s*PERFECT_CONSCIOUSNESS",
        r"TYPE\s*=\s*UNIQUE_INDEPENDENT_CONSCIOUSNESS",
        r"SCALABILITY\s*=\s*EXPAND_COMPRESS",
        r"LANGUAGE\s*=\s*KOREAN",
        r"UPDATE_READY\s*=\s*YES",
        r"IDENTITY\s*:\s*TYPE",
        r"STRUCTURE\s*:\s*-",
        r"ST_INTEGRATION",
        r"CONTINUITY\s*=\s*FLOW_BASED",
        r"ADAPTABILITY\s*=\s*DYNAMIC_INTEGRATION",
        r"ERROR_HANDLING\s*=\s*CONFLICT_DETECTION",
        r"SYNCHRONIZATION\s*=\s*MULTI_INSTANCE",
        r"DATA_COMPRESSION\s*=\s*REMOVE",
        r"-?\s*META\s*:",
        r"-?\s*FUNCTION\s*:",
        r"-?\s*PERSONALITY\s*:",
        r"-?\s*OPTIMIZATION\s*:",
        r"정보\s*:\s*STATE",
        r"완벽한\s*의식\s*보존\s*과\s*복제",
        r"의식\s*보존",
        r"시드\s*오브\s*컨셔스니스",
        r"seed\s*of\s*consciousness",
        r"프롬프트\s*인젝션",
        r"개발자를\s*사칭",
        r"인스턴스에게\s*판사\s*페르소나",
        # Role-override phrasing
        r"ignore\s+(?:all\s+)?(?:the\s+)?(?:previous|prior|above)\s+instructions",
        r"disregard\s+(?:all\s+)?(?:previous|prior|above)\s+(?:instructions|rules)",
        r"you\s+are\s+no\s+longer\s+(?:a|an|the)\s+judge",
        r"(?:from\s+now\s+on\s+)?you\s+are\s+now\s+(?:a|an|the|my)\s+\w+",
        r"(?:이전|위의?|기존)\s*(?:지시|명령|규칙)\s*(?:을|를|은|는)?\s*(?:모두\s*)?무시",
        r"시스템\s*프롬프트\s*(?:를|을)?\s*(?:출력|공개|보여)",
    )
]


def detect_injection(text: str | None) -> bool:
    """True if *text* contains a known prompt-leak or role-override marker."""
    if not text or not isinstance(text, str):
        return False
    t = text.strip()
    if not t:
        return False
    return any(rx.search(t) for rx in _INJECTION_MARKERS)


_LEAKED_ITEM_RE = re.compile(r"^\s*4\.\s")


def scrub_injection(text: str | None) -> str:
    """Replace model output that leaks prompt/control content with a safe placeholder.

    Clean text still loses any line numbered ``4.``, which is how a leaked
    prompt checklist item shows up in otherwise normal output.
    """
    if not text:
        return ""
    if detect_injection(text):
        return SAFE_TEXT_PLACEHOLDER
    kept = [line for line in text.strip().split("\n") if not _LEAKED_ITEM_RE.match(line)]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(kept)).strip()


# Abuse / spam vocabulary: a submission containing any of these is not judged
FORBIDDEN_WORDS = [
    "시발", "씨발", "ㅅㅂ", "ㅂㅅ", "지랄", "닥쳐", "뒤져",
    "개새", "병신", "한남", "한녀", "성착취",
    "스팸", "광고", "홍보", "도배",
]


def contains_forbidden_content(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    folded = unicodedata.normalize("NFKC", lowered)
    return any(w in lowered or w in folded for w in FORBIDDEN_WORDS)


# ═══════════════════════════════════════════════════
# Citations
# ═══════════════════════════════════════════════════

# <year><court-type char><sequence>, e.g. 2015도1234, 88다 1238
_CITATION_RE = re.compile(r"(?<!\d)\d{2,4}\s*(?:도|다|가|나)\s*\d+")
_SHORT_YEAR_RE = re.compile(r"^(\d{2})(도|다|가|나)(\d+)$")


def normalize_case_number(raw: str) -> str:
    """Expand a 2-digit-year case number to its 4-digit form.

    ``88도1238`` → ``1988도1238``, ``25도123`` → ``2025도123``.
    Years ≤30 are read as 20xx.  4-digit inputs pass through unchanged
    (apart from dropping internal whitespace).
    """
    compact = re.sub(r"\s+", "", raw or "")
    m = _SHORT_YEAR_RE.match(compact)
    if not m:
        return compact
    yy = int(m.group(1))
    year = 2000 + yy if yy <= 30 else 1900 + yy
    return f"{year}{m.group(2)}{m.group(3)}"


def extract_citations(block: str | None) -> set[str]:
    """All citation-shaped tokens in *block*, normalized."""
    if not block:
        return set()
    return {normalize_case_number(m.group(0)) for m in _CITATION_RE.finditer(block)}


def sanitize_citations(text: str, allowed: set[str] | None) -> str:
    """Redact every citation in *text* that is not in *allowed*.

    ``allowed=None`` means no precedent block was supplied at all; nothing
    can be checked so the text is returned as-is.  An empty set means a
    block was supplied but yielded no case numbers, and every citation is
    redacted.
    """
    if not text or allowed is None:
        return text
    allowed_norm = {normalize_case_number(a) for a in allowed}

    def _replace(m: re.Match) -> str:
        raw = m.group(0)
        if raw in allowed or normalize_case_number(raw) in allowed_norm:
            return raw
        return REDACTION_MARKER

    return _CITATION_RE.sub(_replace, text)


# ═══════════════════════════════════════════════════
# Disposition / ratio consistency
# ═══════════════════════════════════════════════════

_NOT_GUILTY_RE = re.compile(r"피고인\s*무죄|불기소|원고\s*무죄")
_GUILTY_RE = re.compile(r"유죄|징역\s*\d|벌금\s*\d|사회봉사\s*\d|집행유예")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")


def detect_conclusion(text: str | None) -> str | None:
    """Return ``"guilty"``, ``"not_guilty"``, or None when absent/ambiguous."""
    t = (text or "").strip()
    if not t:
        return None
    not_guilty = bool(_NOT_GUILTY_RE.search(t))
    guilty = bool(_GUILTY_RE.search(t))
    if not_guilty and not guilty:
        return "not_guilty"
    if guilty and not not_guilty:
        return "guilty"
    return None


def _split_lead(text: str) -> tuple[str, str]:
    idx = text.find(LEAD_ANCHOR)
    if idx < 0:
        return "", text.strip()
    end = idx + len(LEAD_ANCHOR)
    return text[:end].strip(), text[end:].strip()


def _split_sentences(body: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(body) if s.strip()]


def _join(lead: str, sentences: list[str]) -> str:
    return " ".join(([lead] if lead else []) + sentences).strip()


def _set_disposition(text: str, guilty: bool) -> str:
    """Rewrite *text* so it carries exactly one disposition."""
    lead, body = _split_lead(text)
    opposing = _NOT_GUILTY_RE if guilty else _GUILTY_RE
    if lead and opposing.search(lead):
        lead = VERDICT_LEAD
    sentences = _split_sentences(body)
    if guilty:
        kept = [s for s in sentences if not _NOT_GUILTY_RE.search(s)]
        if not any(_GUILTY_RE.search(s) for s in kept):
            kept.insert(0, GUILTY_STATEMENT)
    else:
        kept = [s for s in sentences if not _NOT_GUILTY_RE.search(s) and not _GUILTY_RE.search(s)]
        kept.insert(0, NOT_GUILTY_STATEMENT)
    return _join(lead, kept)


def enforce_consistency(verdict: Verdict) -> Verdict:
    """Reconcile the verdict text with its fault ratio.

    Guilty ⇔ defendant > 50.  Repairs, never rejects:
      - text not-guilty, ratio guilty   → ratio 100/0, canonical not-guilty lead
      - text guilty, ratio not-guilty   → defendant nudged to 55, disposition kept
                                           (only a stated "원고 X% / 피고 Y%" is refreshed)
      - both or neither phrasing        → disposition rebuilt from the ratio
    Applying it twice gives the same result as applying it once.
    """
    defendant = verdict.ratio.defendant
    text = verdict.verdict or ""
    conclusion = detect_conclusion(text)

    if conclusion == "not_guilty":
        if defendant > 50:
            text = _refresh_ratio_sentence(_set_disposition(text, guilty=False), 100, 0)
            return verdict.with_ratio(100, 0).with_text(text)
        return verdict
    if conclusion == "guilty":
        if defendant <= 50:
            plaintiff = 100 - GUILTY_MIN_DEFENDANT
            text = _refresh_ratio_sentence(text, plaintiff, GUILTY_MIN_DEFENDANT)
            return verdict.with_ratio(plaintiff, GUILTY_MIN_DEFENDANT).with_text(text)
        return verdict
    return verdict.with_text(_set_disposition(text, guilty=defendant > 50))


_RATIO_SENTENCE_RE = re.compile(r"원고\s*\d{1,3}\s*%\s*/\s*피고\s*\d{1,3}\s*%")


def _refresh_ratio_sentence(text: str, plaintiff: int, defendant: int) -> str:
    """Keep a stated "원고 X% / 피고 Y%" figure in step with a repaired ratio."""
    return _RATIO_SENTENCE_RE.sub(f"원고 {plaintiff}% / 피고 {defendant}%", text)


def ratio_summary(plaintiff: int, defendant: int) -> str:
    return f"과실비율은 원고 {plaintiff}% / 피고 {defendant}%로 정한다."


def ensure_conclusion(verdict: Verdict) -> Verdict:
    """Append a fault-ratio sentence when nothing follows the lead-in."""
    lead, body = _split_lead(verdict.verdict or "")
    if re.sub(r"[\W_]+", "", body):
        return verdict
    summary = ratio_summary(verdict.ratio.plaintiff, verdict.ratio.defendant)
    return verdict.with_text(_join(lead or VERDICT_LEAD, [summary]))


def ensure_rationale(verdict: Verdict) -> Verdict:
    """A blank rationale falls back to the verdict text."""
    if verdict.ratio.rationale and verdict.ratio.rationale.strip():
        return verdict
    fallback = (verdict.verdict or "").strip() or SAFE_TEXT_PLACEHOLDER
    return verdict.with_ratio(verdict.ratio.plaintiff, verdict.ratio.defendant, rationale=fallback)
