"""Shared data models for providers, retrieval and the multi-step pipeline."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

ProviderType = Literal["llamacloud", "bedrock"]
SUPPORTED_PROVIDERS: tuple[str, ...] = ("llamacloud", "bedrock")

StepType = Literal[
    "analyze_question",
    "search_documents",
    "extract_information",
    "synthesize_response",
    "validate_answer",
]
StepStatus = Literal["pending", "running", "completed", "failed"]
Complexity = Literal["simple", "moderate", "complex", "multi-part"]
Coverage = Literal["complete", "partial", "insufficient"]
DetailLevel = Literal["brief", "standard", "comprehensive"]

MIN_STEP_TIMEOUT_MS = 1000


# Credentials


class LlamaCloudCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["llamacloud"] = "llamacloud"
    api_key: str = Field(..., min_length=1, repr=False)


class BedrockCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["bedrock"] = "bedrock"
    access_key_id: str = Field(..., min_length=1, repr=False)
    secret_access_key: str = Field(..., min_length=1, repr=False)
    region: str = Field(..., min_length=1)


ProviderCredentials = Annotated[
    LlamaCloudCredentials | BedrockCredentials,
    Field(discriminator="type"),
]


# Index resources


class IndexProject(BaseModel):
    id: str
    name: str
    description: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class IndexPipeline(BaseModel):
    id: str
    name: str
    project_id: str
    description: str | None = None
    status: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class IndexDocument(BaseModel):
    id: str | None = None
    name: str
    size: int | None = None
    type: str | None = None
    pipeline_id: str | None = None
    pipeline_name: str | None = None
    last_modified: str | None = None
    status: str | None = None


class ProjectCatalog(BaseModel):
    project_id: str
    pipelines: list[IndexPipeline]
    documents: list[IndexDocument]


class RetrievedNode(BaseModel):
    text: str
    source_id: str
    score: float
    title: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# Multi-step pipeline

_ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running"},
    "running": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StepResult(BaseModel):
    id: str
    type: StepType
    title: str
    status: StepStatus = "pending"
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None

    @model_validator(mode="after")
    def _check_times(self) -> StepResult:
        if self.end_time is not None:
            if self.start_time is None or self.end_time < self.start_time:
                raise ValueError("end_time must not precede start_time")
        return self

    def _transition(self, target: str) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal step transition {self.status} -> {target} for {self.type}")
        self.status = target  # type: ignore[assignment]

    def start(self) -> None:
        self._transition("running")
        self.start_time = _utcnow()

    def _finish(self, target: str) -> None:
        self._transition(target)
        self.end_time = max(_utcnow(), self.start_time)  # type: ignore[type-var]
        self.duration_ms = int((self.end_time - self.start_time).total_seconds() * 1000)

    def complete(self, output: dict[str, Any] | None = None) -> None:
        self._finish("completed")
        self.output = output

    def fail(self, error: str, code: str = "STEP_ERROR") -> None:
        self._finish("failed")
        self.error = error
        self.error_code = code


class QuestionAnalysis(BaseModel):
    complexity: Complexity
    required_information: list[str] = Field(default_factory=list)
    specific_entities: list[str] = Field(default_factory=list)
    search_queries: list[str] = Field(default_factory=list)
    expected_sources: int = Field(..., ge=0)
    reasoning: str


class RelevantSource(BaseModel):
    id: str
    title: str | None = None
    relevance_score: float
    snippet: str


class DocumentSearchResult(BaseModel):
    query: str
    documents_found: int = Field(..., ge=0)
    relevant_sources: list[RelevantSource]
    coverage: Coverage


class ExtractedFact(BaseModel):
    fact: str
    source: str = Field(..., description="Source id of the retrieved fragment backing the fact.")
    confidence: float = Field(..., ge=0.0, le=1.0)


class ConflictingInformation(BaseModel):
    topic: str
    conflicting_sources: list[str]


class InformationExtraction(BaseModel):
    extracted_facts: list[ExtractedFact]
    missing_information: list[str] = Field(default_factory=list)
    conflicting_information: list[ConflictingInformation] = Field(default_factory=list)


class SourceUsage(BaseModel):
    id: str
    relevance: float = Field(..., ge=0.0, le=1.0)
    used_in_response: bool


class ResponseSynthesis(BaseModel):
    main_response: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    sources: list[SourceUsage] = Field(default_factory=list)
    limitations: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class AnswerValidation(BaseModel):
    is_valid: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)


class MultiStepConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_steps: int = Field(5, ge=1, le=10)
    timeout_per_step: int = Field(30000, ge=MIN_STEP_TIMEOUT_MS, description="Milliseconds.")
    min_confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    enable_detailed_logging: bool = True
    fallback_to_single_step: bool = True


class UserPreferences(BaseModel):
    detail_level: DetailLevel = "standard"
    include_recommendations: bool = True
    show_reasoning: bool = False


class MultiStepRequest(BaseModel):
    question: str = Field(..., min_length=1)
    question_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    pipeline_ids: list[str] = Field(..., min_length=1)
    context: str | None = None
    preferences: UserPreferences | None = None


class FallbackAnswer(BaseModel):
    answer: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    sources: list[SourceUsage] = Field(default_factory=list)


class MultiStepResponse(BaseModel):
    question_id: str
    final_answer: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    step_trace: list[StepResult]
    used_fallback: bool
    fallback_reason: str | None = None
    sources: list[SourceUsage] = Field(default_factory=list)
