"""FastAPI application entry point."""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gaepan.api import judge
from gaepan.config import (
    CORS_ORIGINS, LOG_LEVEL, LLM_PROVIDER, GEMINI_API_KEY, LAW_GO_KR_OC, SUPABASE_ENABLED,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="GAEPAN Verdict API",
    description="AI judge for everyday disputes, verdict generation with precedent grounding",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(judge.router, prefix="/api/judge", tags=["Judge"])


@app.get("/api/health")
async def health():
    # Report which collaborators are configured, never the secrets themselves
    return {
        "status": "operational",
        "llm_provider": LLM_PROVIDER,
        "model_configured": LLM_PROVIDER == "ollama" or bool(GEMINI_API_KEY),
        "precedent_search": bool(LAW_GO_KR_OC),
        "precedent_cache": "supabase" if SUPABASE_ENABLED else "memory",
    }
