"""Application configuration."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env from backend root (before any os.getenv calls)
load_dotenv(BASE_DIR / ".env")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if o.strip()
]

# Model provider: "gemini" (hosted, needs GEMINI_API_KEY) or "ollama" (local)
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "gemini").strip().lower()

# Gemini configuration
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen3:32b")

# Keyword extraction: one short call, hard-capped
KEYWORD_TIMEOUT = float(os.getenv("KEYWORD_TIMEOUT", "10"))
KEYWORD_TEMPERATURE = 0.2
KEYWORD_MAX_QUERIES = 5
KEYWORD_MAX_QUERY_CHARS = 100

# Verdict synthesis
VERDICT_TIMEOUT = float(os.getenv("VERDICT_TIMEOUT", "60"))            # Per attempt
VERDICT_MAX_ATTEMPTS = int(os.getenv("VERDICT_MAX_ATTEMPTS", "3"))     # 1 initial + 2 retries
VERDICT_RETRY_DELAY = float(os.getenv("VERDICT_RETRY_DELAY", "1.5"))   # Fixed delay between attempts
VERDICT_TEMPERATURE = float(os.getenv("VERDICT_TEMPERATURE", "0.7"))

# Precedent search: 국가법령정보센터 (law.go.kr) open API
# Set LAW_GO_KR_OC to enable; leave empty to run without precedents
LAW_GO_KR_OC = os.getenv("LAW_GO_KR_OC", "").strip()
LAW_API_BASE = os.getenv("LAW_API_BASE", "https://www.law.go.kr/DRF/lawSearch.do")
PRECEDENT_LIMIT = int(os.getenv("PRECEDENT_LIMIT", "8"))               # Max rows in the reference block
PRECEDENT_SEARCH_TIMEOUT = float(os.getenv("PRECEDENT_SEARCH_TIMEOUT", "10"))
PRECEDENT_SEARCH_DISPLAY = 20                                          # Rows requested per API call

# Precedent cache store: Supabase (PostgREST); falls back to in-process memory
SUPABASE_URL = (os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL") or "").strip()
SUPABASE_KEY = (
    os.getenv("SUPABASE_SERVICE_KEY")
    or os.getenv("SUPABASE_ANON_KEY")
    or os.getenv("NEXT_PUBLIC_SUPABASE_ANON_KEY")
    or ""
).strip()
SUPABASE_ENABLED = bool(SUPABASE_URL and SUPABASE_KEY)
SUPABASE_TIMEOUT = float(os.getenv("SUPABASE_TIMEOUT", "5"))
PREFERRED_KEYWORDS_LIMIT = 10

# Submission limits
TITLE_MAX_CHARS = 40
DETAILS_MIN_CHARS = 30
DETAILS_MAX_CHARS = 5000

CATEGORIES = [
    "연애",
    "직장생활",
    "학교생활",
    "군대",
    "가족",
    "결혼생활",
    "육아",
    "친구",
    "이웃/매너",
    "사회이슈",
    "기타",
]

TRIAL_TYPES = ["DEFENSE", "ACCUSATION"]
