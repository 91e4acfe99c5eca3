"""Verdict endpoint."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from gaepan.config import (
    CATEGORIES, TITLE_MAX_CHARS, DETAILS_MIN_CHARS, DETAILS_MAX_CHARS,
)
from gaepan.pipeline.orchestrator import SubmissionRejected, VerdictPipeline
from gaepan.pipeline.schemas import DisputeSubmission, TrialType

router = APIRouter()
logger = logging.getLogger(__name__)

_pipeline: VerdictPipeline | None = None


def get_pipeline() -> VerdictPipeline:
    """Process-wide pipeline, built from config on first use."""
    global _pipeline
    if _pipeline is None:
        _pipeline = VerdictPipeline.from_config()
    return _pipeline


class JudgeRequest(BaseModel):
    title: str
    details: str
    category: str
    trial_type: Literal["DEFENSE", "ACCUSATION"] = "ACCUSATION"
    plaintiff: str = Field(default="", max_length=100)
    defendant: str = Field(default="", max_length=100)

    @field_validator("title")
    @classmethod
    def _title_len(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title is required")
        if len(v) > TITLE_MAX_CHARS:
            raise ValueError(f"title must be at most {TITLE_MAX_CHARS} characters")
        return v

    @field_validator("details")
    @classmethod
    def _details_len(cls, v: str) -> str:
        v = v.strip()
        if not DETAILS_MIN_CHARS <= len(v) <= DETAILS_MAX_CHARS:
            raise ValueError(f"details must be {DETAILS_MIN_CHARS}-{DETAILS_MAX_CHARS} characters")
        return v

    @field_validator("category")
    @classmethod
    def _known_category(cls, v: str) -> str:
        v = v.strip()
        if v not in CATEGORIES:
            raise ValueError(f"unknown category: {v}")
        return v

    @field_validator("plaintiff", "defendant")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    def to_submission(self) -> DisputeSubmission:
        return DisputeSubmission(
            title=self.title,
            details=self.details,
            category=self.category,
            trial_type=TrialType(self.trial_type),
            plaintiff=self.plaintiff,
            defendant=self.defendant,
        )


@router.post("")
async def judge(request: JudgeRequest, pipeline: VerdictPipeline = Depends(get_pipeline)):
    """Generate a verdict for one dispute submission."""
    submission = request.to_submission()
    try:
        outcome = await pipeline.generate_verdict(submission)
    except SubmissionRejected as e:
        logger.info(f"[Judge] submission rejected: {e}")
        return JSONResponse(status_code=400, content={"ok": False, "error": str(e)})
    except Exception as e:
        logger.exception("[Judge] verdict pipeline failed")
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e) or "verdict failed"})

    logger.info(
        f"[Judge] verdict ready: mock={outcome.mock} precedent={outcome.precedent_used} "
        f"ratio={outcome.verdict.ratio.plaintiff}/{outcome.verdict.ratio.defendant}"
    )
    return {"ok": True, **outcome.to_dict()}
