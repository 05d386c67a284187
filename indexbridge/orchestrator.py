"""Multi-step response generation.

The pipeline is a fixed catalog of step descriptors driven by one loop:

    analyze_question -> search_documents -> extract_information
        -> synthesize_response -> validate_answer

Each step moves pending -> running -> completed|failed, is bounded by
``timeout_per_step`` and records its outcome on a :class:`StepResult`. Only
``validate_answer`` tolerates failure; any other failed step ends the run early.
A run that fails early, or finishes below ``min_confidence_threshold``, is
answered by the single-step fallback generator when that is enabled.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from indexbridge.config import load_multistep_config
from indexbridge.credentials import resolve_credentials
from indexbridge.errors import PipelineFailure, StepFailure, StepTimeoutError
from indexbridge.fallback import RetrievalQAGenerator, SingleStepGenerator
from indexbridge.grounding import (
    filter_facts_to_retrieved,
    filter_sources_to_retrieved,
    node_lookup,
    render_context_blocks,
)
from indexbridge.llm_client import LLMClient
from indexbridge.models import (
    AnswerValidation,
    Coverage,
    DocumentSearchResult,
    InformationExtraction,
    MultiStepConfig,
    MultiStepRequest,
    MultiStepResponse,
    QuestionAnalysis,
    RelevantSource,
    ResponseSynthesis,
    RetrievedNode,
    StepResult,
    StepType,
)
from indexbridge.prompts import (
    SYSTEM_PROMPT,
    build_analysis_prompt,
    build_extraction_prompt,
    build_synthesis_prompt,
    build_validation_prompt,
)
from indexbridge.providers.base import KnowledgeRetriever
from indexbridge.providers.factory import ProviderFactory

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

MAX_CONTEXT_NODES = 12
SNIPPET_CHARS = 300
VALIDATION_FAILURE_PENALTY = 0.1


def classify_coverage(found: int, expected: int) -> Coverage:
    """Compare distinct relevant sources found against the analysis estimate."""
    if found <= 0:
        return "insufficient"
    if expected <= 0 or found >= expected:
        return "complete"
    if found >= math.ceil(expected / 2):
        return "partial"
    return "insufficient"


@dataclass
class RunState:
    request: MultiStepRequest
    retriever: KnowledgeRetriever
    analysis: QuestionAnalysis | None = None
    nodes: list[RetrievedNode] = field(default_factory=list)
    search: DocumentSearchResult | None = None
    extraction: InformationExtraction | None = None
    synthesis: ResponseSynthesis | None = None
    validation: AnswerValidation | None = None

    @property
    def known_ids(self) -> set[str]:
        return {node.source_id for node in self.nodes}


@dataclass(frozen=True)
class StepDescriptor:
    type: StepType
    title: str
    executor: Callable[[RunState], Awaitable[BaseModel]]
    tolerant: bool = False


class MultiStepResponseService:
    def __init__(
        self,
        factory: ProviderFactory,
        llm: LLMClient,
        config: MultiStepConfig | None = None,
        fallback: SingleStepGenerator | None = None,
    ) -> None:
        self.factory = factory
        self.llm = llm
        self.config = config or load_multistep_config()
        self.fallback = fallback or RetrievalQAGenerator(llm)
        self.steps = self._step_catalog()[: self.config.max_steps]

    def _step_catalog(self) -> list[StepDescriptor]:
        return [
            StepDescriptor("analyze_question", "Analyzing Question", self._analyze_question),
            StepDescriptor("search_documents", "Searching Documents", self._search_documents),
            StepDescriptor("extract_information", "Extracting Information", self._extract),
            StepDescriptor("synthesize_response", "Synthesizing Response", self._synthesize),
            StepDescriptor("validate_answer", "Validating Answer", self._validate, tolerant=True),
        ]

    async def generate(
        self,
        request: MultiStepRequest,
        *,
        user_email: str | None = None,
    ) -> MultiStepResponse:
        provider = self.factory.get_provider()
        credentials = resolve_credentials(provider.provider_type, user_email)
        retriever = await provider.create_retriever(
            credentials, request.project_id, request.pipeline_ids
        )
        state = RunState(request=request, retriever=retriever)
        trace = [
            StepResult(id=f"{request.question_id}-step-{index}", type=step.type, title=step.title)
            for index, step in enumerate(self.steps, start=1)
        ]

        failure: StepResult | None = None
        for descriptor, step in zip(self.steps, trace, strict=True):
            completed = await self._run_step(descriptor, step, state)
            if not completed and not descriptor.tolerant:
                failure = step
                break

        confidence = self._overall_confidence(state, trace)
        reason = self._fallback_reason(state, failure, confidence)
        if reason is None:
            return self._multi_step_response(state, trace, confidence)

        if self.config.fallback_to_single_step:
            return await self._run_fallback(state, trace, reason)
        if state.synthesis is None:
            raise PipelineFailure(f"Multi-step generation failed: {reason}", step_trace=trace)
        log.info("Returning low-confidence answer without fallback: %s", reason)
        return self._multi_step_response(state, trace, confidence)

    async def _run_step(self, descriptor: StepDescriptor, step: StepResult, state: RunState) -> bool:
        level = logging.INFO if self.config.enable_detailed_logging else logging.DEBUG
        timeout_s = self.config.timeout_per_step / 1000
        step.start()
        log.log(level, "[MULTISTEP] %s started (%s)", descriptor.type, step.id)
        try:
            output = await asyncio.wait_for(descriptor.executor(state), timeout=timeout_s)
        except TimeoutError:
            error = StepTimeoutError(
                f"{descriptor.type} timed out after {self.config.timeout_per_step} ms"
            )
            step.fail(str(error), error.code)
            log.warning("[MULTISTEP] %s", error)
            return False
        except Exception as exc:
            step.fail(f"{exc.__class__.__name__}: {exc}", StepFailure.code)
            log.warning("[MULTISTEP] %s failed: %s", descriptor.type, exc)
            return False

        step.complete(output.model_dump(mode="json"))
        log.log(level, "[MULTISTEP] %s completed in %d ms", descriptor.type, step.duration_ms)
        return True

    def _overall_confidence(self, state: RunState, trace: list[StepResult]) -> float:
        if state.synthesis is None:
            return 0.0
        confidence = state.synthesis.confidence
        validation_step = next((s for s in trace if s.type == "validate_answer"), None)
        if validation_step is None:
            return confidence
        if validation_step.status == "completed" and state.validation is not None:
            return min(confidence, state.validation.confidence)
        return max(0.0, confidence - VALIDATION_FAILURE_PENALTY)

    def _fallback_reason(
        self,
        state: RunState,
        failure: StepResult | None,
        confidence: float,
    ) -> str | None:
        if failure is not None:
            return f"{failure.type} failed: {failure.error}"
        if state.synthesis is None:
            return f"pipeline stopped before synthesize_response (max_steps={self.config.max_steps})"
        if confidence < self.config.min_confidence_threshold:
            return (
                f"confidence {confidence:.2f} below threshold "
                f"{self.config.min_confidence_threshold:.2f}"
            )
        return None

    async def _run_fallback(
        self,
        state: RunState,
        trace: list[StepResult],
        reason: str,
    ) -> MultiStepResponse:
        log.info("[MULTISTEP] Falling back to single-step generation: %s", reason)
        try:
            answer = await self.fallback.generate(state.request, state.retriever)
        except Exception as exc:
            raise PipelineFailure(
                f"Multi-step generation failed ({reason}) and fallback failed: {exc}",
                step_trace=trace,
            ) from exc
        return MultiStepResponse(
            question_id=state.request.question_id,
            final_answer=answer.answer,
            confidence=answer.confidence,
            step_trace=trace,
            used_fallback=True,
            fallback_reason=reason,
            sources=answer.sources,
        )

    def _multi_step_response(
        self,
        state: RunState,
        trace: list[StepResult],
        confidence: float,
    ) -> MultiStepResponse:
        synthesis = state.synthesis
        return MultiStepResponse(
            question_id=state.request.question_id,
            final_answer=synthesis.main_response,
            confidence=confidence,
            step_trace=trace,
            used_fallback=False,
            sources=synthesis.sources,
        )

    async def _complete_json(self, prompt: str, model: type[M], max_tokens: int) -> M:
        payload = await self.llm.generate_json(
            prompt=prompt, system=SYSTEM_PROMPT, max_tokens=max_tokens
        )
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise StepFailure(
                f"{model.__name__} output did not match its schema "
                f"({exc.error_count()} validation error(s))"
            ) from exc

    # Step executors

    async def _analyze_question(self, state: RunState) -> QuestionAnalysis:
        prompt = build_analysis_prompt(state.request.question, state.request.context)
        state.analysis = await self._complete_json(prompt, QuestionAnalysis, max_tokens=800)
        return state.analysis

    async def _search_documents(self, state: RunState) -> DocumentSearchResult:
        analysis = state.analysis
        queries = [q.strip() for q in analysis.search_queries if q.strip()]
        queries = list(dict.fromkeys(queries)) or [state.request.question]

        results = await asyncio.gather(
            *(state.retriever.retrieve(query) for query in queries),
            return_exceptions=True,
        )
        found: list[RetrievedNode] = []
        errors: list[Exception] = []
        for query, result in zip(queries, results, strict=True):
            if isinstance(result, Exception):
                log.warning("Search query %r failed: %s", query, result)
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                found.extend(result)
        if len(errors) == len(queries):
            raise StepFailure(f"All {len(queries)} search queries failed: {errors[0]}") from errors[0]

        unique = sorted(node_lookup(found).values(), key=lambda node: node.score, reverse=True)
        state.nodes = unique[:MAX_CONTEXT_NODES]
        state.search = DocumentSearchResult(
            query=" | ".join(queries),
            documents_found=len(found),
            relevant_sources=[
                RelevantSource(
                    id=node.source_id,
                    title=node.title,
                    relevance_score=node.score,
                    snippet=node.text[:SNIPPET_CHARS],
                )
                for node in unique
            ],
            coverage=classify_coverage(len(unique), analysis.expected_sources),
        )
        return state.search

    async def _extract(self, state: RunState) -> InformationExtraction:
        prompt = build_extraction_prompt(
            state.request.question, state.analysis, render_context_blocks(state.nodes)
        )
        extraction = await self._complete_json(prompt, InformationExtraction, max_tokens=2000)
        dropped = filter_facts_to_retrieved(extraction, state.known_ids)
        if dropped:
            log.warning("Dropped %d extracted facts citing unknown sources", dropped)
        state.extraction = extraction
        return extraction

    async def _synthesize(self, state: RunState) -> ResponseSynthesis:
        prompt = build_synthesis_prompt(
            state.request.question,
            state.extraction,
            render_context_blocks(state.nodes),
            state.request.preferences,
        )
        synthesis = await self._complete_json(prompt, ResponseSynthesis, max_tokens=2500)
        dropped = filter_sources_to_retrieved(synthesis, state.known_ids)
        if dropped:
            log.warning("Dropped %d synthesis sources that were never retrieved", dropped)
        state.synthesis = synthesis
        return synthesis

    async def _validate(self, state: RunState) -> AnswerValidation:
        prompt = build_validation_prompt(
            state.request.question, state.synthesis.main_response, state.extraction
        )
        state.validation = await self._complete_json(prompt, AnswerValidation, max_tokens=600)
        return state.validation
