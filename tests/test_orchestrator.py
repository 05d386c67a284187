import asyncio
import json

from indexbridge.errors import PipelineFailure, ProviderConnectionError
from indexbridge.llm_client import LLMClient, LLMResponse, LLMServiceError, MockOfflineClient
from indexbridge.models import (
    FallbackAnswer,
    MultiStepConfig,
    MultiStepRequest,
    RetrievedNode,
    SourceUsage,
    UserPreferences,
)
from indexbridge.orchestrator import MultiStepResponseService, classify_coverage
from indexbridge.providers.base import DocumentIndexProvider, KnowledgeRetriever
from indexbridge.providers.factory import ProviderFactory

QUESTION = "What are the security requirements for production access?"
REQUEST = MultiStepRequest(
    question=QUESTION,
    question_id="q-42",
    project_id="proj-1",
    pipeline_ids=["pipe-1"],
)

ANALYSIS = {
    "complexity": "complex",
    "required_information": ["authentication", "approval process"],
    "specific_entities": ["production"],
    "search_queries": ["production access authentication", "production access approval"],
    "expected_sources": 5,
    "reasoning": "Two distinct aspects need separate searches.",
}


def _nodes(prefix: str, count: int = 3) -> list[RetrievedNode]:
    return [
        RetrievedNode(text=f"{prefix} requirement {i}", source_id=f"{prefix}-{i}", score=0.9 - i * 0.1)
        for i in range(count)
    ]


SEARCH_RESULTS = {
    "production access authentication": _nodes("auth"),
    "production access approval": _nodes("approval"),
}

EXTRACTION = {
    "extracted_facts": [
        {"fact": "Hardware keys are required.", "source": "auth-0", "confidence": 0.9},
        {"fact": "Managers approve access.", "source": "approval-1", "confidence": 0.8},
    ],
    "missing_information": [],
    "conflicting_information": [],
}


def _synthesis(confidence: float = 0.85, sources=("auth-0",)) -> dict:
    return {
        "main_response": "Production access needs hardware keys and manager approval.",
        "confidence": confidence,
        "sources": [{"id": s, "relevance": 0.9, "used_in_response": True} for s in sources],
        "limitations": [],
        "recommendations": ["Review access quarterly."],
    }


def _validation(confidence: float = 0.9) -> dict:
    return {"is_valid": True, "confidence": confidence, "issues": []}


def _step_for(prompt: str) -> str:
    if '"search_queries"' in prompt:
        return "analyze"
    if '"extracted_facts"' in prompt:
        return "extract"
    if '"main_response"' in prompt:
        return "synthesize"
    if '"is_valid"' in prompt:
        return "validate"
    return "single"


class Slow:
    def __init__(self, seconds: float):
        self.seconds = seconds


class ScriptedLLM(LLMClient):
    """Answers each pipeline prompt with a fixed payload, an error or a delay."""

    def __init__(self, **payloads):
        self.payloads = {
            "analyze": ANALYSIS,
            "extract": EXTRACTION,
            "synthesize": _synthesis(),
            "validate": _validation(),
            "single": {"answer": "Single-step answer.", "confidence": 0.6, "sources": ["auth-0"]},
        }
        self.payloads.update(payloads)
        self.calls: list[str] = []
        self.prompts: dict[str, str] = {}

    async def generate(self, prompt, **kwargs):
        step = _step_for(prompt)
        self.calls.append(step)
        self.prompts[step] = prompt
        payload = self.payloads[step]
        if isinstance(payload, Slow):
            await asyncio.sleep(payload.seconds)
            payload = {}
        if isinstance(payload, Exception):
            raise payload
        return LLMResponse(text=json.dumps(payload), input_tokens=0, output_tokens=0)


class ScriptedRetriever(KnowledgeRetriever):
    def __init__(self, results: dict | None = None, default=None):
        self.results = SEARCH_RESULTS if results is None else results
        self.default = _nodes("auth") if default is None else default
        self.queries: list[str] = []

    async def retrieve(self, query):
        self.queries.append(query)
        result = self.results.get(query, self.default)
        if isinstance(result, Exception):
            raise result
        return result


class StaticProvider(DocumentIndexProvider):
    provider_type = "llamacloud"
    service_name = "Static"

    def __init__(self, retriever: KnowledgeRetriever):
        super().__init__()
        self.retriever = retriever
        self.bound: list[tuple] = []

    async def verify_credentials_and_fetch_projects(self, credentials):
        return []

    async def fetch_pipelines_for_project(self, credentials, project_id):
        return []

    async def fetch_documents_for_pipeline(self, credentials, pipeline_id):
        return []

    async def create_retriever(self, credentials, project_id, pipeline_ids):
        self.bound.append((credentials, project_id, tuple(pipeline_ids)))
        return self.retriever


class RecordingFallback:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    async def generate(self, request, retriever):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return FallbackAnswer(
            answer="Fallback answer.",
            confidence=0.5,
            sources=[SourceUsage(id="auth-0", relevance=0.9, used_in_response=True)],
        )


def _service(monkeypatch, llm=None, retriever=None, fallback=None, **config):
    monkeypatch.setenv("LLAMACLOUD_API_KEY", "llx-test-key-123")
    provider = StaticProvider(retriever or ScriptedRetriever())
    factory = ProviderFactory(selector=lambda: "llamacloud", builders={"llamacloud": lambda: provider})
    service = MultiStepResponseService(
        factory,
        llm or ScriptedLLM(),
        MultiStepConfig(**config),
        fallback=fallback,
    )
    return service, provider


def _statuses(response_or_trace) -> list[str]:
    trace = getattr(response_or_trace, "step_trace", response_or_trace)
    return [step.status for step in trace]


def test_coverage_classification() -> None:
    assert classify_coverage(6, 5) == "complete"
    assert classify_coverage(3, 5) == "partial"
    assert classify_coverage(2, 5) == "insufficient"
    assert classify_coverage(0, 0) == "insufficient"
    assert classify_coverage(1, 0) == "complete"


def test_security_question_runs_every_step(monkeypatch) -> None:
    llm = ScriptedLLM()
    retriever = ScriptedRetriever()
    fallback = RecordingFallback()
    service, provider = _service(monkeypatch, llm=llm, retriever=retriever, fallback=fallback)

    response = asyncio.run(service.generate(REQUEST))

    assert response.used_fallback is False
    assert response.fallback_reason is None
    assert response.question_id == "q-42"
    assert response.confidence == 0.85
    assert _statuses(response) == ["completed"] * 5
    assert [step.id for step in response.step_trace][0] == "q-42-step-1"
    assert llm.calls == ["analyze", "extract", "synthesize", "validate"]
    assert sorted(retriever.queries) == sorted(ANALYSIS["search_queries"])
    assert fallback.calls == 0
    assert provider.bound[0][1:] == ("proj-1", ("pipe-1",))

    search = response.step_trace[1].output
    assert search["coverage"] == "complete"
    assert search["documents_found"] == 6
    assert len(search["relevant_sources"]) == 6

    facts = response.step_trace[2].output["extracted_facts"]
    assert facts
    fact_sources = {fact["source"] for fact in facts}
    assert {source.id for source in response.sources} & fact_sources
    for step in response.step_trace:
        assert step.end_time >= step.start_time
        assert step.duration_ms >= 0


def test_prompts_carry_retrieved_context_and_preferences(monkeypatch) -> None:
    llm = ScriptedLLM()
    service, _ = _service(monkeypatch, llm=llm)
    request = MultiStepRequest(
        question=QUESTION,
        question_id="q-43",
        project_id="proj-1",
        pipeline_ids=["pipe-1"],
        context="Applies to the payments team.",
        preferences=UserPreferences(detail_level="brief"),
    )
    asyncio.run(service.generate(request))
    assert "Applies to the payments team." in llm.prompts["analyze"]
    assert "source_id=auth-0" in llm.prompts["extract"]
    assert "two or three sentences" in llm.prompts["synthesize"]
    assert "[auth-0]" in llm.prompts["validate"]


def test_analyze_failure_skips_search_and_falls_back(monkeypatch) -> None:
    llm = ScriptedLLM(analyze=LLMServiceError("model unavailable"))
    retriever = ScriptedRetriever()
    fallback = RecordingFallback()
    service, _ = _service(monkeypatch, llm=llm, retriever=retriever, fallback=fallback)

    response = asyncio.run(service.generate(REQUEST))

    assert retriever.queries == []
    assert llm.calls == ["analyze"]
    assert fallback.calls == 1
    assert response.used_fallback is True
    assert response.final_answer == "Fallback answer."
    assert "analyze_question failed" in response.fallback_reason
    assert _statuses(response) == ["failed", "pending", "pending", "pending", "pending"]
    assert response.step_trace[0].error_code == "STEP_ERROR"
    assert "model unavailable" in response.step_trace[0].error


def test_analyze_failure_without_fallback_raises(monkeypatch) -> None:
    llm = ScriptedLLM(analyze=LLMServiceError("model unavailable"))
    retriever = ScriptedRetriever()
    service, _ = _service(monkeypatch, llm=llm, retriever=retriever, fallback_to_single_step=False)
    try:
        asyncio.run(service.generate(REQUEST))
        raise AssertionError("Expected PipelineFailure.")
    except PipelineFailure as exc:
        assert "analyze_question failed" in str(exc)
        assert _statuses(exc.step_trace)[:2] == ["failed", "pending"]
    assert retriever.queries == []


def test_analysis_schema_mismatch_is_a_step_error(monkeypatch) -> None:
    llm = ScriptedLLM(analyze={"complexity": "unknowable"})
    fallback = RecordingFallback()
    service, _ = _service(monkeypatch, llm=llm, fallback=fallback)
    response = asyncio.run(service.generate(REQUEST))
    assert response.used_fallback is True
    assert response.step_trace[0].error_code == "STEP_ERROR"
    assert "QuestionAnalysis" in response.step_trace[0].error


def test_confidence_equal_to_threshold_keeps_multi_step_answer(monkeypatch) -> None:
    llm = ScriptedLLM(synthesize=_synthesis(confidence=0.7), validate=_validation(0.7))
    fallback = RecordingFallback()
    service, _ = _service(monkeypatch, llm=llm, fallback=fallback, min_confidence_threshold=0.7)
    response = asyncio.run(service.generate(REQUEST))
    assert response.used_fallback is False
    assert response.confidence == 0.7
    assert fallback.calls == 0


def test_confidence_below_threshold_falls_back(monkeypatch) -> None:
    llm = ScriptedLLM(synthesize=_synthesis(confidence=0.69))
    fallback = RecordingFallback()
    service, _ = _service(monkeypatch, llm=llm, fallback=fallback, min_confidence_threshold=0.7)
    response = asyncio.run(service.generate(REQUEST))
    assert response.used_fallback is True
    assert "below threshold" in response.fallback_reason
    assert _statuses(response) == ["completed"] * 5
    assert fallback.calls == 1


def test_low_confidence_without_fallback_returns_multi_step_answer(monkeypatch) -> None:
    llm = ScriptedLLM(synthesize=_synthesis(confidence=0.3))
    service, _ = _service(monkeypatch, llm=llm, fallback_to_single_step=False)
    response = asyncio.run(service.generate(REQUEST))
    assert response.used_fallback is False
    assert response.confidence == 0.3


def test_validation_lowers_confidence(monkeypatch) -> None:
    llm = ScriptedLLM(synthesize=_synthesis(confidence=0.95), validate=_validation(0.75))
    service, _ = _service(monkeypatch, llm=llm)
    response = asyncio.run(service.generate(REQUEST))
    assert response.confidence == 0.75


def test_validation_failure_is_tolerated(monkeypatch) -> None:
    llm = ScriptedLLM(synthesize=_synthesis(confidence=0.9), validate=LLMServiceError("reviewer down"))
    fallback = RecordingFallback()
    service, _ = _service(monkeypatch, llm=llm, fallback=fallback)
    response = asyncio.run(service.generate(REQUEST))
    assert response.used_fallback is False
    assert abs(response.confidence - 0.8) < 1e-9
    assert _statuses(response) == ["completed"] * 4 + ["failed"]
    assert response.step_trace[4].error_code == "STEP_ERROR"
    assert fallback.calls == 0


def test_step_timeout_is_recorded(monkeypatch) -> None:
    llm = ScriptedLLM(extract=Slow(5))
    fallback = RecordingFallback()
    service, _ = _service(monkeypatch, llm=llm, fallback=fallback, timeout_per_step=1000)
    response = asyncio.run(service.generate(REQUEST))
    extract = response.step_trace[2]
    assert extract.status == "failed"
    assert extract.error_code == "STEP_TIMEOUT"
    assert "1000 ms" in extract.error
    assert _statuses(response)[3:] == ["pending", "pending"]
    assert response.used_fallback is True


def test_search_tolerates_partial_query_failure(monkeypatch) -> None:
    retriever = ScriptedRetriever(
        results={
            "production access authentication": _nodes("auth"),
            "production access approval": ProviderConnectionError("pipeline offline"),
        }
    )
    service, _ = _service(monkeypatch, retriever=retriever)
    response = asyncio.run(service.generate(REQUEST))
    search = response.step_trace[1]
    assert search.status == "completed"
    assert search.output["documents_found"] == 3
    assert search.output["coverage"] == "partial"
    facts = response.step_trace[2].output["extracted_facts"]
    assert [fact["source"] for fact in facts] == ["auth-0"]


def test_search_fails_when_every_query_fails(monkeypatch) -> None:
    error = ProviderConnectionError("index down")
    retriever = ScriptedRetriever(
        results={query: error for query in ANALYSIS["search_queries"]}
    )
    service, _ = _service(monkeypatch, retriever=retriever, fallback_to_single_step=False)
    try:
        asyncio.run(service.generate(REQUEST))
        raise AssertionError("Expected PipelineFailure.")
    except PipelineFailure as exc:
        search = exc.step_trace[1]
        assert search.status == "failed"
        assert "All 2 search queries failed" in search.error


def test_empty_search_queries_use_the_question(monkeypatch) -> None:
    llm = ScriptedLLM(analyze=dict(ANALYSIS, search_queries=["  "]))
    retriever = ScriptedRetriever()
    service, _ = _service(monkeypatch, llm=llm, retriever=retriever)
    asyncio.run(service.generate(REQUEST))
    assert retriever.queries == [QUESTION]


def test_unretrieved_synthesis_sources_are_dropped(monkeypatch) -> None:
    llm = ScriptedLLM(synthesize=_synthesis(sources=("auth-0", "invented-9")))
    service, _ = _service(monkeypatch, llm=llm)
    response = asyncio.run(service.generate(REQUEST))
    assert [source.id for source in response.sources] == ["auth-0"]


def test_max_steps_truncates_catalog(monkeypatch) -> None:
    llm = ScriptedLLM()
    fallback = RecordingFallback()
    service, _ = _service(monkeypatch, llm=llm, fallback=fallback, max_steps=3)
    response = asyncio.run(service.generate(REQUEST))
    assert len(response.step_trace) == 3
    assert llm.calls == ["analyze", "extract"]
    assert response.used_fallback is True
    assert "stopped before synthesize_response" in response.fallback_reason


def test_max_steps_truncation_without_fallback_raises(monkeypatch) -> None:
    service, _ = _service(monkeypatch, max_steps=2, fallback_to_single_step=False)
    try:
        asyncio.run(service.generate(REQUEST))
        raise AssertionError("Expected PipelineFailure.")
    except PipelineFailure as exc:
        assert _statuses(exc.step_trace) == ["completed", "completed"]


def test_max_steps_four_skips_validation(monkeypatch) -> None:
    llm = ScriptedLLM(synthesize=_synthesis(confidence=0.8))
    service, _ = _service(monkeypatch, llm=llm, max_steps=4)
    response = asyncio.run(service.generate(REQUEST))
    assert "validate" not in llm.calls
    assert response.confidence == 0.8
    assert len(response.step_trace) == 4


def test_max_steps_above_catalog_runs_five_steps(monkeypatch) -> None:
    service, _ = _service(monkeypatch, max_steps=10)
    response = asyncio.run(service.generate(REQUEST))
    assert len(response.step_trace) == 5


def test_fallback_failure_raises_pipeline_failure(monkeypatch) -> None:
    llm = ScriptedLLM(analyze=LLMServiceError("model unavailable"))
    fallback = RecordingFallback(error=LLMServiceError("still unavailable"))
    service, _ = _service(monkeypatch, llm=llm, fallback=fallback)
    try:
        asyncio.run(service.generate(REQUEST))
        raise AssertionError("Expected PipelineFailure.")
    except PipelineFailure as exc:
        assert "fallback failed" in str(exc)
        assert isinstance(exc.__cause__, LLMServiceError)
        assert len(exc.step_trace) == 5


def test_default_fallback_is_single_step_generation(monkeypatch) -> None:
    llm = ScriptedLLM(synthesize=_synthesis(confidence=0.2))
    retriever = ScriptedRetriever()
    service, _ = _service(monkeypatch, llm=llm, retriever=retriever)
    response = asyncio.run(service.generate(REQUEST))
    assert response.used_fallback is True
    assert response.final_answer == "Single-step answer."
    assert [source.id for source in response.sources] == ["auth-0"]
    assert retriever.queries[-1] == QUESTION


def test_offline_client_answers_end_to_end(monkeypatch) -> None:
    retriever = ScriptedRetriever(results={}, default=_nodes("policy", count=2))
    service, _ = _service(monkeypatch, llm=MockOfflineClient(), retriever=retriever)
    response = asyncio.run(service.generate(REQUEST))
    assert response.used_fallback is False
    assert response.confidence == 0.8
    assert "policy requirement 0" in response.final_answer
    assert {source.id for source in response.sources} == {"policy-0", "policy-1"}


class SlowRetriever(KnowledgeRetriever):
    def __init__(self, delay: float):
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    async def retrieve(self, query):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        return SEARCH_RESULTS[query]


def test_search_queries_run_concurrently(monkeypatch) -> None:
    retriever = SlowRetriever(delay=0.4)
    service, _ = _service(monkeypatch, retriever=retriever)
    response = asyncio.run(service.generate(REQUEST))
    search = response.step_trace[1]
    assert search.status == "completed"
    assert retriever.peak == 2
    assert search.duration_ms < 800
