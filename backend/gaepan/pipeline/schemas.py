"""Domain types and JSON Schema definitions for the verdict pipeline.

The JSON schemas are passed to the model as structured-output constraints
(Gemini ``responseSchema`` / Ollama ``format``) so field names stay fixed.
"""

from dataclasses import dataclass, field, replace
from enum import Enum


class TrialType(str, Enum):
    """Caller-declared framing of a submission."""
    DEFENSE = "DEFENSE"          # Author seeks exoneration
    ACCUSATION = "ACCUSATION"    # Author seeks condemnation of the other side


TRIAL_TYPE_LABELS = {
    TrialType.DEFENSE: "무죄 주장 (작성자가 자신의 억울함을 호소)",
    TrialType.ACCUSATION: "유죄 주장 (작성자가 상대방의 잘못을 고발)",
}


@dataclass(frozen=True)
class DisputeSubmission:
    """A validated dispute handed to the pipeline. Never mutated."""
    title: str
    details: str
    category: str
    trial_type: TrialType = TrialType.ACCUSATION
    plaintiff: str = ""
    defendant: str = ""


@dataclass
class KeywordExtractionResult:
    skip: bool = False
    query_list: list[str] = field(default_factory=list)
    primary_query: str | None = None


@dataclass(frozen=True)
class Ratio:
    plaintiff: int
    defendant: int
    rationale: str = ""


@dataclass(frozen=True)
class Verdict:
    title: str
    ratio: Ratio
    verdict: str

    def with_ratio(self, plaintiff: int, defendant: int, rationale: str | None = None) -> "Verdict":
        new_ratio = Ratio(
            plaintiff=plaintiff,
            defendant=defendant,
            rationale=self.ratio.rationale if rationale is None else rationale,
        )
        return replace(self, ratio=new_ratio)

    def with_text(self, verdict: str) -> "Verdict":
        return replace(self, verdict=verdict)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "ratio": {
                "plaintiff": self.ratio.plaintiff,
                "defendant": self.ratio.defendant,
                "rationale": self.ratio.rationale,
            },
            "verdict": self.verdict,
        }


@dataclass
class VerdictOutcome:
    """Result of one pipeline run."""
    verdict: Verdict
    mock: bool = False
    precedent_used: bool = False

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.to_dict(),
            "mock": self.mock,
            "precedent_used": self.precedent_used,
        }


@dataclass(frozen=True)
class PrecedentRecord:
    """A single row returned by the precedent search service."""
    name: str
    case_no: str = ""
    date: str = ""
    court: str = ""

    @property
    def dedup_key(self) -> str:
        return self.case_no or f"{self.name}|{self.date}"

    def to_line(self, index: int) -> str:
        return f"{index}. {self.name} ({self.court} {self.date} 선고 {self.case_no})"


@dataclass(frozen=True)
class PrecedentResolution:
    """Reference block (None when nothing was found) and whether every search ran."""
    block: str | None = None
    complete: bool = True


# ═══════════════════════════════════════════════════
# VERDICT OUTPUT
# ═══════════════════════════════════════════════════

VERDICT_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "ratio": {
            "type": "object",
            "properties": {
                "plaintiff": {"type": "integer"},
                "defendant": {"type": "integer"},
                "rationale": {"type": "string"},
            },
            "required": ["plaintiff", "defendant", "rationale"],
        },
        "verdict": {"type": "string"},
    },
    "required": ["title", "ratio", "verdict"],
}
