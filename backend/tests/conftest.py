"""Shared fixtures for the GAEPAN verdict test suite."""

import json

import pytest

from gaepan.pipeline.llm_client import LLMCallError
from gaepan.pipeline.precedent_cache import (
    InMemoryKeyValueStore, InMemoryKeywordStore, PrecedentCache,
)
from gaepan.pipeline.precedent_search import PrecedentResolver, PrecedentSearchError
from gaepan.pipeline.schemas import DisputeSubmission, PrecedentRecord, TrialType
from gaepan.pipeline.verdict_synthesizer import VerdictSynthesizer


# ═══════════════════════════════════════════════════
# Fakes for the external collaborators
# ═══════════════════════════════════════════════════

class ScriptedLLM:
    """Text generator that replays canned answers.

    ``keyword_reply`` answers every keyword call; ``verdict_replies`` are
    consumed one per verdict attempt.  An exception instance in either slot
    is raised instead of returned.
    """

    name = "scripted"

    def __init__(self, keyword_reply="SKIP", verdict_replies=None):
        self.keyword_reply = keyword_reply
        self.verdict_replies = list(verdict_replies or [])
        self.calls: list[str] = []
        self.prompts: list[str] = []

    async def generate(self, system_prompt, prompt, *, temperature=0.7,
                       expect_json=False, timeout=60, task_label=""):
        self.calls.append(task_label)
        self.prompts.append(prompt)
        if task_label == "Keywords":
            reply = self.keyword_reply
        elif self.verdict_replies:
            reply = self.verdict_replies.pop(0)
        else:
            reply = LLMCallError("no scripted reply left")
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakeSearchClient:
    """Precedent search that answers from a ``{query: [records]}`` table."""

    def __init__(self, results=None, fail_on=None, enabled=True):
        self.results = results or {}
        self.fail_on = set(fail_on or [])
        self.enabled = enabled
        self.calls: list[tuple[str, int]] = []

    async def search(self, query, limit, mode=1):
        self.calls.append((query, mode))
        if query in self.fail_on:
            raise PrecedentSearchError("search backend unavailable")
        return list(self.results.get(query, []))


def verdict_json(plaintiff=30, defendant=70, rationale="근거 설명.", verdict=None, title="판결 요지"):
    if verdict is None:
        verdict = (
            "주문: 본 법정은 다음과 같이 선고한다. 피고인 유죄. 벌금 30만원에 처한다. "
            f"과실비율은 원고 {plaintiff}% / 피고 {defendant}%로 정한다."
        )
    return json.dumps({
        "title": title,
        "ratio": {"plaintiff": plaintiff, "defendant": defendant, "rationale": rationale},
        "verdict": verdict,
    }, ensure_ascii=False)


# ═══════════════════════════════════════════════════
# Submissions
# ═══════════════════════════════════════════════════

@pytest.fixture
def accusation_submission():
    """Workplace dispute where the other side took credit for the author's work."""
    return DisputeSubmission(
        title="팀장이 내 보고서를 자기 성과로 올렸어요",
        details=(
            "석 달 동안 준비한 분기 보고서를 팀장이 본인 이름으로 임원 회의에 제출했습니다. "
            "문제를 제기하자 팀 전체가 함께 만든 자료라며 넘어가려고 합니다. "
            "회사 돈으로 산 장비를 개인적으로 가져간 정황도 있어 사기나 횡령이 아닌지 궁금합니다."
        ),
        category="직장생활",
        trial_type=TrialType.ACCUSATION,
        plaintiff="작성자",
        defendant="팀장",
    )


@pytest.fixture
def defense_submission():
    """Calm DEFENSE submission with no fault-weighted phrases."""
    return DisputeSubmission(
        title="친구 생일을 깜빡했는데 제가 잘못인가요",
        details=(
            "야근이 이어지던 주에 친구 생일 선물을 하루 지나서 전했습니다. "
            "직접 찾아가 사과하고 케이크도 함께 먹었는데 친구는 아직 마음이 풀리지 않았다고 합니다. "
            "저는 최선을 다했다고 생각하는데 제가 잘못한 건지 판단을 받고 싶습니다."
        ),
        category="친구",
        trial_type=TrialType.DEFENSE,
    )


# ═══════════════════════════════════════════════════
# Pipeline collaborators
# ═══════════════════════════════════════════════════

@pytest.fixture
def precedent_rows():
    return [
        PrecedentRecord(name="사기", case_no="2015도1234", date="2015.03.12", court="대법원"),
        PrecedentRecord(name="업무상횡령", case_no="2018도5678", date="2018.07.26", court="대법원"),
    ]


@pytest.fixture
def memory_cache():
    return PrecedentCache(InMemoryKeyValueStore(), InMemoryKeywordStore())


@pytest.fixture
def make_resolver():
    def _make(results=None, fail_on=None, enabled=True):
        client = FakeSearchClient(results, fail_on, enabled)
        return PrecedentResolver(client), client
    return _make


@pytest.fixture
def fast_synthesizer():
    """Synthesizer with the production retry budget and no sleep between attempts."""
    def _make(llm):
        return VerdictSynthesizer(llm, max_attempts=3, retry_delay=0)
    return _make
