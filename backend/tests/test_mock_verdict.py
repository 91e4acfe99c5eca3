"""Tests for the deterministic fallback verdict."""

import pytest

from gaepan.pipeline.mock_verdict import (
    build_mock_verdict,
    compute_mock_ratio,
    fnv1a_32,
    severity_bucket,
)
from gaepan.pipeline.orchestrator import finalize_verdict
from gaepan.pipeline.sanitizer import (
    NOT_GUILTY_STATEMENT, VERDICT_LEAD, detect_conclusion, enforce_consistency,
)
from gaepan.pipeline.schemas import DisputeSubmission, TrialType


def _sub(details: str, trial_type=TrialType.ACCUSATION, title="사건") -> DisputeSubmission:
    return DisputeSubmission(title=title, details=details, category="기타", trial_type=trial_type)


SAMPLES = [
    _sub("룸메이트가 설거지를 일주일째 미루고 있다."),
    _sub("동료가 회의 중에 폭언을 하고 책상을 밀쳤다."),
    _sub("내가 먼저 고함을 질렀지만 상대도 물러서지 않았다."),
    _sub("이웃이 밤마다 음악을 크게 틀어서 잠을 못 잔다.", TrialType.DEFENSE),
    _sub("친구가 욕설과 협박을 했다고 나를 고소하겠다고 한다.", TrialType.DEFENSE),
    _sub("", title="빈 사건"),
]


class TestHash:

    def test_known_values(self):
        assert fnv1a_32("") == 2166136261
        assert fnv1a_32("a") == 0xE40C292C

    def test_stable(self):
        assert fnv1a_32("개판") == fnv1a_32("개판")


class TestSeverity:

    @pytest.mark.parametrize("p,d,expected", [
        (20, 80, "severe"),
        (70, 30, "severe"),
        (40, 60, "moderate"),
        (50, 50, "minor"),
    ])
    def test_buckets(self, p, d, expected):
        assert severity_bucket(p, d) == expected


class TestMockVerdict:

    @pytest.mark.parametrize("submission", SAMPLES)
    def test_deterministic(self, submission):
        assert build_mock_verdict(submission) == build_mock_verdict(submission)

    @pytest.mark.parametrize("submission", SAMPLES)
    def test_ratio_invariants(self, submission):
        v = build_mock_verdict(submission)
        assert v.ratio.plaintiff + v.ratio.defendant == 100
        assert 0 <= v.ratio.defendant <= 100
        assert v.verdict.startswith(VERDICT_LEAD)
        expected = "guilty" if v.ratio.defendant > 50 else "not_guilty"
        assert detect_conclusion(v.verdict) == expected

    @pytest.mark.parametrize("submission", SAMPLES)
    def test_already_consistent(self, submission):
        v = build_mock_verdict(submission)
        assert enforce_consistency(v) == v
        assert finalize_verdict(v, None) == v

    def test_defense_without_fault_phrases_is_acquitted(self, defense_submission):
        v = build_mock_verdict(defense_submission)

        assert (v.ratio.plaintiff, v.ratio.defendant) == (100, 0)
        assert NOT_GUILTY_STATEMENT in v.verdict
        assert "유죄" not in v.verdict

    def test_defendant_heavy_accusation_is_guilty(self):
        v = build_mock_verdict(_sub("상대가 술자리에서 폭행을 하고 사과도 하지 않았다."))
        assert v.ratio.defendant > 50
        assert "유죄" in v.verdict

    def test_plaintiff_heavy_accusation_is_acquitted(self):
        v = build_mock_verdict(_sub("솔직히 내가 먼저 시비를 걸었고 분위기가 험악해졌다."))
        assert v.ratio.defendant < 50
        assert "피고인 무죄" in v.verdict

    def test_ratio_in_steps_of_five(self):
        for submission in SAMPLES:
            _, d = compute_mock_ratio(submission)
            assert d % 5 == 0

    def test_accusation_floor(self):
        _, d = compute_mock_ratio(_sub("내가 먼저 막말을 하고 고함을 질렀다."))
        assert d >= 10

    def test_title_quotes_submission(self, accusation_submission):
        v = build_mock_verdict(accusation_submission)
        assert accusation_submission.title in v.title
