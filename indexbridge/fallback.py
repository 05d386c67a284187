"""Single-step answer generation used when the multi-step run underdelivers."""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from indexbridge.grounding import node_lookup, render_context_blocks
from indexbridge.llm_client import LLMClient, LLMServiceError
from indexbridge.models import FallbackAnswer, MultiStepRequest, SourceUsage
from indexbridge.prompts import SYSTEM_PROMPT, build_single_step_prompt
from indexbridge.providers.base import KnowledgeRetriever

log = logging.getLogger(__name__)


class SingleStepGenerator(Protocol):
    async def generate(
        self, request: MultiStepRequest, retriever: KnowledgeRetriever
    ) -> FallbackAnswer: ...


class _SingleStepPayload(BaseModel):
    answer: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    sources: list[str] = Field(default_factory=list)


class RetrievalQAGenerator:
    """One retrieval plus one completion, grounded on the retrieved sources."""

    def __init__(self, llm: LLMClient, max_tokens: int = 1200) -> None:
        self.llm = llm
        self.max_tokens = max_tokens

    async def generate(
        self, request: MultiStepRequest, retriever: KnowledgeRetriever
    ) -> FallbackAnswer:
        nodes = await retriever.retrieve(request.question)
        lookup = node_lookup(nodes)
        prompt = build_single_step_prompt(
            question=request.question,
            contexts=render_context_blocks(nodes),
            context=request.context,
        )
        payload = await self.llm.generate_json(
            prompt=prompt, system=SYSTEM_PROMPT, max_tokens=self.max_tokens
        )
        try:
            parsed = _SingleStepPayload.model_validate(payload)
        except ValidationError as exc:
            raise LLMServiceError(f"Single-step answer did not match its schema: {exc}") from exc

        sources = [
            SourceUsage(
                id=source_id,
                relevance=min(1.0, max(0.0, lookup[source_id].score)),
                used_in_response=True,
            )
            for source_id in dict.fromkeys(parsed.sources)
            if source_id in lookup
        ]
        if parsed.sources and not sources:
            log.warning("Single-step answer cited no retrieved source; lowering confidence")
        confidence = parsed.confidence if sources or not parsed.sources else parsed.confidence / 2
        return FallbackAnswer(answer=parsed.answer, confidence=confidence, sources=sources)
