"""LLM client for the verdict-authoring model.

Supports two backends behind one ``generate()`` shape:
  - Gemini (hosted) via the ``generateContent`` REST endpoint
  - Ollama (local) via ``/api/chat`` with JSON Schema structured outputs

Each ``generate()`` call is a single attempt.  Retry policy belongs to the
caller (the verdict synthesizer owns its own retry loop), so any transport
or payload problem surfaces as ``LLMCallError``.
"""

import json
import re
import time
import logging
from typing import Protocol

import httpx

from gaepan.config import (
    LLM_PROVIDER, GEMINI_API_KEY, GEMINI_MODEL, GEMINI_BASE_URL,
    OLLAMA_BASE_URL, OLLAMA_MODEL, VERDICT_TIMEOUT,
)

logger = logging.getLogger(__name__)


class LLMCallError(RuntimeError):
    """A model call failed: transport error, timeout, HTTP status, or empty payload."""


class TextGenerator(Protocol):
    name: str

    async def generate(
        self,
        system_prompt: str,
        prompt: str,
        *,
        temperature: float = 0.7,
        expect_json: bool | dict = False,
        timeout: float = VERDICT_TIMEOUT,
        task_label: str = "",
    ) -> str: ...


class GeminiClient:
    """Gemini ``generateContent`` over plain httpx."""

    name = "gemini"

    def __init__(self, api_key: str, model: str = GEMINI_MODEL, base_url: str = GEMINI_BASE_URL,
                 transport: httpx.AsyncBaseTransport | None = None):
        if not api_key:
            raise ValueError("Gemini client requires an API key")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.transport = transport

    async def generate(
        self,
        system_prompt: str,
        prompt: str,
        *,
        temperature: float = 0.7,
        expect_json: bool | dict = False,
        timeout: float = VERDICT_TIMEOUT,
        task_label: str = "",
    ) -> str:
        label = task_label or "Gemini"
        generation_config: dict = {"temperature": temperature}
        if expect_json:
            # Schema is spelled out in the system prompt; MIME type forces bare JSON
            generation_config["responseMimeType"] = "application/json"

        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        url = f"{self.base_url}/models/{self.model}:generateContent"
        t0 = time.time()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.post(
                    url,
                    json=body,
                    headers={"x-goog-api-key": self.api_key},
                )
                response.raise_for_status()
                result = response.json()
        except httpx.TimeoutException as e:
            raise LLMCallError(f"[{label}] timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise LLMCallError(f"[{label}] HTTP error: {e}") from e
        except ValueError as e:
            raise LLMCallError(f"[{label}] response was not JSON: {e}") from e

        try:
            parts = result["candidates"][0]["content"]["parts"]
            content = "".join(p.get("text", "") for p in parts)
        except (KeyError, IndexError, TypeError) as e:
            reason = (result.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise LLMCallError(f"[{label}] unexpected response shape ({reason})") from e

        if not content.strip():
            raise LLMCallError(f"[{label}] empty response")
        logger.info(f"[{label}] {len(content):,} chars in {time.time() - t0:.1f}s ({self.model})")
        return content


class OllamaClient:
    """Local Ollama ``/api/chat``."""

    name = "ollama"

    def __init__(self, base_url: str = OLLAMA_BASE_URL, model: str = OLLAMA_MODEL,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.transport = transport

    async def generate(
        self,
        system_prompt: str,
        prompt: str,
        *,
        temperature: float = 0.7,
        expect_json: bool | dict = False,
        timeout: float = VERDICT_TIMEOUT,
        task_label: str = "",
    ) -> str:
        label = task_label or "Ollama"
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        # JSON Schema dict → structured outputs; True → basic JSON mode
        if isinstance(expect_json, dict):
            format_param: dict | str = expect_json
        elif expect_json:
            format_param = "json"
        else:
            format_param = ""

        body = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temperature},
            "format": format_param,
            "think": False,
        }
        t0 = time.time()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=body)
                response.raise_for_status()
                result = response.json()
        except httpx.TimeoutException as e:
            raise LLMCallError(f"[{label}] timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise LLMCallError(f"[{label}] HTTP error: {e}") from e
        except ValueError as e:
            raise LLMCallError(f"[{label}] response was not JSON: {e}") from e

        content = (result.get("message") or {}).get("content", "")
        if not content or not content.strip():
            raise LLMCallError(f"[{label}] empty response")
        logger.info(f"[{label}] {len(content):,} chars in {time.time() - t0:.1f}s ({self.model})")
        return content


def get_text_generator() -> TextGenerator | None:
    """Build the configured model client, or None when no model is available.

    None sends the pipeline straight to the deterministic mock verdict.
    """
    if LLM_PROVIDER == "ollama":
        return OllamaClient()
    if LLM_PROVIDER == "gemini":
        if not GEMINI_API_KEY:
            logger.warning("GEMINI_API_KEY not set, verdicts will use the mock generator")
            return None
        return GeminiClient(GEMINI_API_KEY)
    logger.warning(f"Unknown LLM_PROVIDER '{LLM_PROVIDER}', verdicts will use the mock generator")
    return None


def parse_json_response(text: str) -> dict:
    """Extract and parse a JSON object from model response text.

    Attempts multiple extraction strategies in order:
      1. Direct parse
      2. Markdown code block extraction
      3. Brace scanning from each ``{`` to the farthest ``}``
      4. Repair of trailing commas / unclosed braces
    """
    if not text or not text.strip():
        raise json.JSONDecodeError("Empty response", "", 0)

    text = text.strip()
    # Strip inline <think>...</think> blocks some local models emit
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()
    if not text:
        raise json.JSONDecodeError("Empty response after stripping think blocks", "", 0)

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    code_block_pattern = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)
    for match in code_block_pattern.finditer(text):
        block = match.group(1).strip()
        if block.startswith("{"):
            try:
                return json.loads(block)
            except json.JSONDecodeError:
                continue

    start_positions = [i for i, c in enumerate(text) if c == "{"]
    for start in start_positions:
        end = text.rfind("}")
        while end > start:
            try:
                parsed = json.loads(text[start:end + 1])
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                pass
            end = text.rfind("}", start, end)

    repaired = _attempt_json_repair(text)
    if repaired is not None:
        return repaired

    raise json.JSONDecodeError("No valid JSON object found in response", text[:200], 0)


def _attempt_json_repair(text: str) -> dict | None:
    """Try to repair common JSON issues from LLM output.

    Fixes trailing commas before } or ], trailing non-JSON text after the
    last }, and unclosed braces/brackets (appends missing closers).
    Returns the parsed dict on success, None on failure.
    """
    first_brace = text.find("{")
    if first_brace < 0:
        return None
    candidate = text[first_brace:]

    last_brace = candidate.rfind("}")
    if last_brace >= 0:
        candidate = candidate[: last_brace + 1]

    candidate = re.sub(r",\s*}", "}", candidate)
    candidate = re.sub(r",\s*]", "]", candidate)
    try:
        parsed = json.loads(candidate)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    opens = 0
    open_sq = 0
    in_string = False
    escape = False
    for ch in candidate:
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            opens += 1
        elif ch == "}":
            opens -= 1
        elif ch == "[":
            open_sq += 1
        elif ch == "]":
            open_sq -= 1

    if opens > 0 or open_sq > 0:
        candidate += "]" * max(open_sq, 0) + "}" * max(opens, 0)
        candidate = re.sub(r",\s*}", "}", candidate)
        candidate = re.sub(r",\s*]", "]", candidate)
        try:
            parsed = json.loads(candidate)
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            pass

    return None
