"""LLM-backed transaction matcher.

An alternate implementation of the matcher interface: instead of scoring
patterns with rules, it asks a language model to pick one catalog pattern.
Features:
- OpenAI-compatible (/chat/completions) or Ollama (/api/chat) endpoints
- Concurrency limiting via semaphore, shared by all batch workers
- Retry on timeouts, connection errors and 5xx
- Answers restricted to catalog pattern ids; anything else is UNKNOWN

Privacy constraints:
- Never log prompts or transaction text at INFO level
- Auth headers are never logged
"""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import TYPE_CHECKING

import httpx

from cash_clearing.matching.engine import TransactionMatcher
from cash_clearing.schemas.catalog import PatternCatalog, ProcessorPattern
from cash_clearing.schemas.suggestion import UNKNOWN_PATTERN, MatchCandidate, MatchSignal
from cash_clearing.schemas.transaction import Transaction
from cash_clearing.spark_ai.prompts import PROMPT_VERSION, PatternMatchPrompt

if TYPE_CHECKING:
    from cash_clearing.config import LLMConfig

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 150

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")
_OBJECT_RE = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", re.DOTALL)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"(\{|,)\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*:")
_ANSWER_FIELD_RES = {
    "pattern_id": re.compile(r'"?pattern_id"?\s*:\s*"([^"]+)"'),
    "confidence": re.compile(r'"?confidence"?\s*:\s*([0-9.]+)'),
    "reason": re.compile(r'"?reason"?\s*:\s*"([^"]+)"'),
}


def _as_object(text: str) -> dict | None:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict):
        return parsed[0]
    return parsed if isinstance(parsed, dict) else None


def parse_model_json(content: str) -> dict:
    """Recover the JSON answer object from model output.

    Tries, in order: the text as-is (code fences removed), the outermost
    embedded {...} block, and a cleaned copy without control characters,
    trailing commas or bare keys. A one-element array counts as its object.
    As a last resort the answer fields are pulled out individually.

    Raises:
        json.JSONDecodeError: If no answer can be recovered.
    """
    text = _FENCE_RE.sub("", (content or "").strip()).strip()
    if not text:
        raise json.JSONDecodeError("Empty response", content or "", 0)

    embedded = _OBJECT_RE.search(text)
    cleaned = _BARE_KEY_RE.sub(
        r'\1"\2":', _TRAILING_COMMA_RE.sub(r"\1", _CONTROL_CHARS_RE.sub("", text))
    )
    for candidate in (text, embedded.group() if embedded else None, cleaned):
        parsed = _as_object(candidate) if candidate else None
        if parsed is not None:
            return parsed

    fields = {}
    for key, field_re in _ANSWER_FIELD_RES.items():
        found = field_re.search(text)
        if found:
            fields[key] = found.group(1)
    if "pattern_id" in fields:
        logger.debug("Extracted partial answer from malformed model output")
        return fields

    raise json.JSONDecodeError(f"Could not parse JSON from response: {text[:200]}", text, 0)


class LLMConcurrencyLimiter:
    """Semaphore-based concurrency limiter for LLM requests.

    Prevents overwhelming the LLM server when several batch pages run in
    parallel. Thread-safe for synchronous usage.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a slot for an LLM request.

        Args:
            timeout: Maximum time to wait (None = blocking)

        Returns:
            True if acquired, False if timeout
        """
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        """Release a slot after request completes."""
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        """Current number of active LLM requests."""
        with self._lock:
            return self._active_count


class LLMMatcher(TransactionMatcher):
    """Matcher that delegates pattern selection to a language model.

    The model only chooses among the catalog's applicable patterns; its
    confidence becomes the raw score and is weighted by the pattern's
    confidence_weight exactly like a rule match. Any failure (transport,
    unparsable answer, unknown pattern id) yields the UNKNOWN candidate so
    the transaction goes to human review.
    """

    name = "llm"

    def __init__(self, llm_config: LLMConfig, client: httpx.Client | None = None) -> None:
        """Initialize the matcher.

        Args:
            llm_config: LLM settings (endpoint, model, limits).
            client: Optional preconfigured HTTP client.
        """
        self.llm_config = llm_config

        headers = {}
        if llm_config.auth_header:
            # Support formats: "Bearer token" or "Custom-Header: value"
            if ":" in llm_config.auth_header:
                key, value = llm_config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = llm_config.auth_header

        self._client = client or httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(llm_config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )
        self._prompt = PatternMatchPrompt()
        self._limiter = LLMConcurrencyLimiter(max_concurrent=llm_config.max_concurrent)

        self._system_prompt_cache: dict[tuple[str, tuple[str, ...]], str] = {}
        self._cache_lock = threading.Lock()

    @property
    def active_requests(self) -> int:
        """Number of in-flight LLM requests."""
        return self._limiter.active_requests

    def match(self, transaction: Transaction, catalog: PatternCatalog) -> list[MatchCandidate]:
        patterns = [
            p
            for p in catalog.active_patterns()
            if p.applies_to(transaction.account_id, transaction.type_code)
        ]
        if not patterns:
            return [MatchCandidate.unknown("no applicable patterns", matcher=self.name)]

        system_prompt = self._system_prompt(catalog, patterns)
        user_message = self._prompt.format_user_message(transaction)

        result = self._call_llm(system_prompt, user_message)
        if result is None:
            return [MatchCandidate.unknown("LLM unavailable", matcher=self.name)]

        try:
            data = parse_model_json(result["content"])
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse LLM response for %s: %s", transaction.id, e)
            return [MatchCandidate.unknown("unparsable LLM response", matcher=self.name)]

        return [self._candidate_from_response(data, patterns, transaction.id)]

    def _candidate_from_response(
        self, data: dict, patterns: list[ProcessorPattern], transaction_id: str
    ) -> MatchCandidate:
        pattern_id = str(data.get("pattern_id") or data.get("AI_SUGGEST_TEXT") or "").strip()
        reason = str(data.get("reason") or data.get("AI_REASON") or "")[:MAX_REASON_LENGTH]

        by_id = {p.id: p for p in patterns}
        pattern = by_id.get(pattern_id)
        if pattern is None:
            if pattern_id and pattern_id != UNKNOWN_PATTERN:
                logger.warning(
                    "LLM suggested pattern '%s' for %s, not in catalog", pattern_id, transaction_id
                )
            return MatchCandidate.unknown(reason or "LLM found no matching pattern", matcher=self.name)

        try:
            confidence = float(data.get("confidence", data.get("AI_CONFIDENCE_SCORE", 0.0)))
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))

        return MatchCandidate(
            pattern_id=pattern.id,
            pattern_name=pattern.name,
            score=confidence * pattern.confidence_weight,
            raw_score=confidence,
            priority_order=pattern.priority_order,
            signals=(
                MatchSignal(signal="llm", score=confidence, detail=f"{self.llm_config.model} {PROMPT_VERSION}"),
            ),
            reasons=(f"llm_match ({reason})" if reason else "llm_match",),
            matcher=self.name,
        )

    def _system_prompt(self, catalog: PatternCatalog, patterns: list[ProcessorPattern]) -> str:
        key = (catalog.version, tuple(p.id for p in patterns))
        with self._cache_lock:
            cached = self._system_prompt_cache.get(key)
            if cached is None:
                cached = self._prompt.format_system_prompt(patterns)
                self._system_prompt_cache[key] = cached
            return cached

    def _build_request(self, system_prompt: str, user_message: str) -> tuple[str, dict]:
        """URL and payload for the configured API style."""
        base_url = self.llm_config.base_url.rstrip("/")
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]
        if self.llm_config.api_style == "openai":
            return f"{base_url}/chat/completions", {
                "model": self.llm_config.model,
                "messages": messages,
                "temperature": self.llm_config.temperature,
                "response_format": {"type": "json_object"},
            }
        return f"{base_url}/api/chat", {
            "model": self.llm_config.model,
            "messages": messages,
            "stream": False,
            "format": "json",
            "options": {"temperature": self.llm_config.temperature},
        }

    def _extract_content(self, data: dict) -> str:
        if self.llm_config.api_style == "openai":
            choices = data.get("choices") or []
            if not choices:
                return ""
            return (choices[0].get("message") or {}).get("content", "") or ""
        return (data.get("message") or {}).get("content", "") or ""

    def _call_llm(self, system_prompt: str, user_message: str) -> dict | None:
        """Call the LLM with concurrency limiting and retries.

        Returns:
            Dict with "content" and "model" keys, or None on failure.
        """
        if not self._limiter.acquire(timeout=self.llm_config.timeout_seconds):
            logger.warning(
                "LLM request timed out waiting for concurrency slot (max=%d, active=%d)",
                self.llm_config.max_concurrent,
                self._limiter.active_requests,
            )
            return None

        try:
            url, payload = self._build_request(system_prompt, user_message)
            attempts = max(1, self.llm_config.max_retries + 1)

            for attempt in range(1, attempts + 1):
                try:
                    logger.debug("Calling LLM model %s (attempt %d/%d)", self.llm_config.model, attempt, attempts)
                    response = self._client.post(url, json=payload)
                    response.raise_for_status()
                    content = self._extract_content(response.json())
                    logger.debug("LLM %s returned %d chars", self.llm_config.model, len(content))
                    return {"content": content, "model": self.llm_config.model}

                except httpx.TimeoutException:
                    logger.warning("LLM request timed out after %ds", self.llm_config.timeout_seconds)
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    logger.error("LLM API error %s for model '%s'", status, self.llm_config.model)
                    if status < 500 and status != 429:
                        return None
                except httpx.RequestError as e:
                    logger.error("LLM request failed: %s", e)
                except ValueError as e:
                    logger.warning("LLM returned invalid JSON envelope: %s", e)
                    return None

            return None

        finally:
            self._limiter.release()

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()
