"""Deterministic fallback verdict - no model, no network.

Used when no model is configured or the verdict model exhausts its
retries.  The same submission always yields the same verdict: a 32-bit
FNV-1a hash of the text seeds a small perturbation on top of a keyword
based fault ratio.
"""

import math

from gaepan.pipeline.sanitizer import (
    VERDICT_LEAD, NOT_GUILTY_STATEMENT, ratio_summary,
)
from gaepan.pipeline.schemas import DisputeSubmission, Ratio, TrialType, Verdict

# Phrases that put fault on the defendant (the other side, under ACCUSATION)
DEFENDANT_HEAVY = [
    "폭언", "욕설", "협박", "모욕", "가스라이팅", "손찌검", "폭행", "때렸", "밀쳤", "성희롱",
]
DEFENDANT_MEDIUM = [
    "잠수", "읽씹", "무시", "거짓말", "약속", "연락", "늦", "지각", "환불", "돈", "빌려",
]
# Phrases that put fault on the plaintiff (the author)
PLAINTIFF_HEAVY = [
    "내가 먼저", "참지 못", "질렀", "폭발", "고함", "막말", "카톡 폭탄", "스토킹", "집착",
]
PLAINTIFF_MEDIUM = ["서운", "예민", "계속", "확인", "따졌", "추궁", "감정적"]

_SEVERITY_LABELS = {"severe": "중대", "moderate": "상당", "minor": "경미"}
_SENTENCES = {
    "severe": "사회봉사 200시간 및 공개 사과를 명한다.",
    "moderate": "사회봉사 80시간을 명한다.",
    "minor": "사회봉사 20시간에 준하는 반성문 제출을 명한다.",
}


def fnv1a_32(text: str) -> int:
    """Small deterministic 32-bit FNV-1a hash."""
    h = 2166136261
    for ch in text:
        h ^= ord(ch)
        h = (h * 16777619) & 0xFFFFFFFF
    return h


def _round_to(n: float, step: int) -> int:
    # Half-up, so 12.5 → 15 and -12.5 → -10
    return int(math.floor(n / step + 0.5) * step)


def _clamp(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, n))


def severity_bucket(plaintiff: int, defendant: int) -> str:
    top = max(plaintiff, defendant)
    if top >= 70:
        return "severe"
    if top >= 55:
        return "moderate"
    return "minor"


def compute_mock_ratio(submission: DisputeSubmission) -> tuple[int, int]:
    """(plaintiff, defendant) fault shares before template selection."""
    text = "\n".join([
        submission.title, submission.plaintiff, submission.defendant, submission.details,
    ]).strip()
    h = fnv1a_32(text)
    details = submission.details
    defense = submission.trial_type == TrialType.DEFENSE

    # DEFENSE starts from the presumption of innocence
    defendant = 0 if defense else 50
    if any(k in details for k in DEFENDANT_HEAVY):
        defendant += 40 if defense else 25
    if any(k in details for k in DEFENDANT_MEDIUM):
        defendant += 10
    if any(k in details for k in PLAINTIFF_HEAVY):
        defendant -= 25
    if any(k in details for k in PLAINTIFF_MEDIUM):
        defendant -= 10

    defendant += (h % 25) - 12
    defendant = _clamp(_round_to(defendant, 5), 0 if defense else 10, 90)
    return 100 - defendant, defendant


def build_mock_verdict(submission: DisputeSubmission) -> Verdict:
    plaintiff, defendant = compute_mock_ratio(submission)
    title = f"사건 개요: “{submission.title}”"

    if submission.trial_type == TrialType.DEFENSE and defendant <= 10:
        rationale = (
            "기록을 보면 피고인에게 책임을 물을 만한 행위가 확인되지 않는다. "
            "억울함을 호소한 취지가 받아들여지며, 상대방의 문제 제기는 근거가 부족하다."
        )
        verdict = f"{VERDICT_LEAD} {NOT_GUILTY_STATEMENT} {ratio_summary(100, 0)}"
        return Verdict(title=title, ratio=Ratio(100, 0, rationale), verdict=verdict)

    bucket = severity_bucket(plaintiff, defendant)
    label = _SEVERITY_LABELS[bucket]
    rationale = (
        "기록 기준으로 보면 한쪽만 완벽하게 잘못했다고 보기 어렵다. "
        "다만 반복성, 강도, 선제행위가 더 큰 쪽에 과실을 더 얹는다. "
        f"원고 {plaintiff}%, 피고 {defendant}%는 누가 더 성숙하게 행동했는가에 대한 점수표다."
    )

    if defendant > 50:
        verdict = (
            f"{VERDICT_LEAD} 피고인 {label} 유죄. {_SENTENCES[bucket]} "
            f"{ratio_summary(plaintiff, defendant)}"
        )
    elif defendant == plaintiff:
        verdict = (
            f"{VERDICT_LEAD} 피고인 무죄. 양측의 책임이 대등하므로 어느 한쪽에 더 무거운 책임을 지우지 않는다. "
            f"{ratio_summary(plaintiff, defendant)}"
        )
    else:
        verdict = (
            f"{VERDICT_LEAD} 피고인 무죄. 오히려 원고 쪽 책임이 {label}하다고 본다. "
            f"{ratio_summary(plaintiff, defendant)}"
        )
    return Verdict(title=title, ratio=Ratio(plaintiff, defendant, rationale), verdict=verdict)
