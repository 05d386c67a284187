"""Provider-agnostic async text-completion client used by the pipeline steps."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import re
from dataclasses import dataclass

from indexbridge.config import env_flag

log = logging.getLogger(__name__)


class LLMServiceError(RuntimeError):
    """Raised when an LLM call fails after retries."""


@dataclass(frozen=True)
class LLMResponse:
    text: str
    input_tokens: int
    output_tokens: int


class LLMClient:
    """Abstract base class for text-completion providers."""

    provider: str = "base"

    async def _sleep_backoff(self, attempt: int) -> None:
        from indexbridge.config import LLM_BACKOFF_BASE_S, LLM_BACKOFF_MAX_S

        base = max(0.1, LLM_BACKOFF_BASE_S)
        max_wait = max(base, LLM_BACKOFF_MAX_S)
        wait = min(max_wait, base * (2**attempt))
        jitter = random.uniform(0.0, base)  # nosec B311
        await asyncio.sleep(wait + jitter)

    def _is_retryable_error(self, exc: Exception) -> tuple[bool, str]:
        name = exc.__class__.__name__
        status_code = getattr(exc, "status_code", None)
        body = str(exc).lower()
        retryable_status = {408, 409, 429, 500, 502, 503, 504}
        retryable_name_markers = (
            "RateLimitError",
            "APITimeoutError",
            "APIConnectionError",
            "InternalServerError",
        )

        if status_code in retryable_status:
            return True, f"status={status_code}"
        if any(marker in name for marker in retryable_name_markers):
            return True, name
        if "rate limit" in body or "too many requests" in body or "timeout" in body:
            return True, name
        return False, name

    async def _chat_completion_with_retry(self, client, kwargs: dict):
        from indexbridge.config import LLM_MAX_RETRIES

        attempts = max(1, LLM_MAX_RETRIES + 1)
        for attempt in range(attempts):
            try:
                return await client.chat.completions.create(**kwargs)
            except Exception as exc:
                retryable, reason = self._is_retryable_error(exc)
                is_last = attempt == attempts - 1
                if not retryable or is_last:
                    msg = (
                        f"{self.__class__.__name__} failed after "
                        f"{attempt + 1}/{attempts} attempts: {exc}"
                    )
                    raise LLMServiceError(msg) from exc
                log.warning(
                    "%s transient error (attempt %d/%d, reason=%s). Retrying...",
                    self.__class__.__name__,
                    attempt + 1,
                    attempts,
                    reason,
                )
                await self._sleep_backoff(attempt)

        raise LLMServiceError(f"{self.__class__.__name__} failed unexpectedly.")

    async def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        raise NotImplementedError

    async def generate_json(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict:
        response = await self.generate(
            prompt=prompt,
            system=system,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = response.text.strip()
        # Handles JSON wrapped in markdown fences.
        if text.startswith("```"):
            text = text.strip("`")
            text = text.replace("json", "", 1).strip()
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMServiceError(f"{self.__class__.__name__} returned invalid JSON: {exc}") from exc


class OpenAIClient(LLMClient):
    provider = "openai"

    def __init__(self) -> None:
        from openai import AsyncOpenAI

        from indexbridge.config import OPENAI_API_KEY, OPENAI_BASE_URL

        api_key = os.getenv("OPENAI_API_KEY", OPENAI_API_KEY)
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai.")
        base_url = os.getenv("OPENAI_BASE_URL", OPENAI_BASE_URL) or None
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        from indexbridge.config import GENERATION_TEMPERATURE, OPENAI_MODEL

        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict = {
            "model": model or os.getenv("OPENAI_MODEL", OPENAI_MODEL),
            "messages": messages,
            "temperature": temperature if temperature is not None else GENERATION_TEMPERATURE,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        resp = await self._chat_completion_with_retry(self._client, kwargs)
        usage = resp.usage
        return LLMResponse(
            text=resp.choices[0].message.content or "",
            input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
        )


@dataclass(frozen=True)
class ContextRow:
    source_id: str
    score: float
    text: str


class MockOfflineClient(LLMClient):
    """Deterministic client that answers every pipeline prompt from its own context."""

    provider = "mock"

    _CONTEXT = re.compile(
        r"\[\d+\]\s+source_id=(?P<source_id>\S+)\s+score=(?P<score>[-\d.]+)"
        r".*?\n\s*text=(?P<text>.*?)(?=\n\s*\n\s*\[\d+\]|\n\s*\n[A-Z_]+:|\Z)",
        re.DOTALL,
    )
    _QUESTION = re.compile(r"QUESTION:\s*\n(?P<question>.*?)\n\s*\n", re.DOTALL)

    def _extract_context_rows(self, prompt: str) -> list[ContextRow]:
        rows: list[ContextRow] = []
        for match in self._CONTEXT.finditer(prompt):
            rows.append(
                ContextRow(
                    source_id=match.group("source_id"),
                    score=float(match.group("score")),
                    text=" ".join(match.group("text").split()),
                )
            )
        return rows

    def _question(self, prompt: str) -> str:
        match = self._QUESTION.search(prompt)
        return match.group("question").strip() if match else "the question"

    def _quote(self, text: str) -> str:
        words = text.split()
        return " ".join(words[:24]).strip() or "No content available."

    def _build_payload(self, prompt: str) -> dict:
        rows = self._extract_context_rows(prompt)
        question = self._question(prompt)

        if '"search_queries"' in prompt:
            return {
                "complexity": "moderate",
                "required_information": [question],
                "specific_entities": [],
                "search_queries": [question],
                "expected_sources": 2,
                "reasoning": "Offline deterministic analysis: the question is searched verbatim.",
            }
        if '"extracted_facts"' in prompt:
            return {
                "extracted_facts": [
                    {"fact": self._quote(row.text), "source": row.source_id, "confidence": 0.8}
                    for row in rows[:5]
                ],
                "missing_information": [] if rows else [question],
                "conflicting_information": [],
            }
        if '"main_response"' in prompt:
            cited = rows[:3]
            return {
                "main_response": " ".join(self._quote(row.text) for row in cited)
                or "No supporting context was retrieved.",
                "confidence": 0.8 if cited else 0.1,
                "sources": [
                    {"id": row.source_id, "relevance": 0.8, "used_in_response": True}
                    for row in cited
                ],
                "limitations": ["Offline deterministic synthesis."],
                "recommendations": [],
            }
        if '"is_valid"' in prompt:
            return {"is_valid": True, "confidence": 0.8, "issues": []}

        first = rows[0] if rows else None
        return {
            "answer": self._quote(first.text) if first else "No supporting context was retrieved.",
            "confidence": 0.6 if first else 0.1,
            "sources": [first.source_id] if first else [],
        }

    async def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        del system, model, temperature, max_tokens
        payload = self._build_payload(prompt)
        return LLMResponse(text=json.dumps(payload), input_tokens=0, output_tokens=0)


def get_llm_client() -> LLMClient:
    from indexbridge.config import LLM_PROVIDER, OFFLINE_MODE

    provider = os.getenv("LLM_PROVIDER", LLM_PROVIDER).strip().lower()
    if env_flag("OFFLINE_MODE", OFFLINE_MODE):
        return MockOfflineClient()

    if provider == "openai":
        return OpenAIClient()
    if provider == "mock":
        return MockOfflineClient()
    raise ValueError(f"Unknown LLM_PROVIDER={provider!r}")
