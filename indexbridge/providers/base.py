"""Common contract for document index providers and their retrievers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, TypeVar

from pydantic import TypeAdapter, ValidationError

from indexbridge.errors import ConfigurationError, PayloadValidationError, ProviderConnectionError
from indexbridge.models import (
    IndexDocument,
    IndexPipeline,
    IndexProject,
    ProviderCredentials,
    RetrievedNode,
)
from indexbridge.transport import ResilientTransport

T = TypeVar("T")


def parse_payload(adapter: TypeAdapter[T], payload: Any, *, service: str, what: str) -> T:
    """Validate a whole payload; any mismatch rejects it outright."""
    try:
        return adapter.validate_python(payload)
    except ValidationError as exc:
        raise PayloadValidationError(
            f"Malformed {what} payload from {service}: {exc.error_count()} validation error(s)"
        ) from exc


class KnowledgeRetriever(ABC):
    """Turns a text query into scored, cited fragments, highest score first."""

    @abstractmethod
    async def retrieve(self, query: str) -> list[RetrievedNode]:
        raise NotImplementedError


class DocumentIndexProvider(ABC):
    """One document retrieval backend behind the shared five-operation contract."""

    provider_type: str = "base"
    service_name: str = "index provider"

    def __init__(self, transport: ResilientTransport | None = None) -> None:
        self.transport = transport or ResilientTransport(service=self.service_name)

    @abstractmethod
    async def verify_credentials_and_fetch_projects(
        self, credentials: ProviderCredentials
    ) -> list[IndexProject]:
        raise NotImplementedError

    async def verify_project_access(
        self, credentials: ProviderCredentials, project_id: str
    ) -> IndexProject:
        projects = await self.verify_credentials_and_fetch_projects(credentials)
        for project in projects:
            if project.id == project_id:
                return project
        raise ProviderConnectionError(
            f"The specified project {project_id!r} is not accessible with these credentials"
        )

    @abstractmethod
    async def fetch_pipelines_for_project(
        self, credentials: ProviderCredentials, project_id: str
    ) -> list[IndexPipeline]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_documents_for_pipeline(
        self, credentials: ProviderCredentials, pipeline_id: str
    ) -> list[IndexDocument]:
        """Return the pipeline's documents; an empty list is a valid answer."""
        raise NotImplementedError

    @abstractmethod
    async def create_retriever(
        self,
        credentials: ProviderCredentials,
        project_id: str,
        pipeline_ids: list[str],
    ) -> KnowledgeRetriever:
        raise NotImplementedError

    def _require(self, credentials: ProviderCredentials, expected: type[T]) -> T:
        if not isinstance(credentials, expected):
            raise ConfigurationError(
                f"{self.service_name} requires {expected.__name__}, got {type(credentials).__name__}"
            )
        return credentials
