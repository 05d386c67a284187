"""LlamaCloud provider: bearer-token JSON REST API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, TypeAdapter

from indexbridge.config import LLAMACLOUD_BASE_URL, RETRIEVER_TOP_K
from indexbridge.models import (
    IndexDocument,
    IndexPipeline,
    IndexProject,
    LlamaCloudCredentials,
    ProviderCredentials,
    RetrievedNode,
)
from indexbridge.providers.base import DocumentIndexProvider, KnowledgeRetriever, parse_payload
from indexbridge.transport import ResilientTransport, check_response

log = logging.getLogger(__name__)

SERVICE = "LlamaCloud"


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore")


class LlamaCloudProject(_Wire):
    id: str
    name: str
    description: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class LlamaCloudPipeline(_Wire):
    id: str
    name: str
    project_id: str
    description: str | None = None
    status: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class LlamaCloudFile(_Wire):
    id: str | None = None
    name: str
    file_size: int | None = None
    file_type: str | None = None
    pipeline_id: str | None = None
    last_modified_at: str | None = None
    status: str | None = None


class LlamaCloudNode(_Wire):
    id_: str | None = None
    text: str = ""
    metadata: dict[str, Any] = {}


class LlamaCloudScoredNode(_Wire):
    node: LlamaCloudNode
    score: float | None = None


class LlamaCloudRetrieveResponse(_Wire):
    retrieval_nodes: list[LlamaCloudScoredNode] = []


_PROJECTS = TypeAdapter(list[LlamaCloudProject])
_PIPELINES = TypeAdapter(list[LlamaCloudPipeline])
_FILES = TypeAdapter(list[LlamaCloudFile])
_RETRIEVAL = TypeAdapter(LlamaCloudRetrieveResponse)

# Marker for a body that is not JSON at all; fails schema validation downstream.
_UNPARSABLE = object()


def _or_empty(payload: Any) -> Any:
    return [] if payload is None else payload


class LlamaCloudClient:
    """Thin async JSON client; each request is one transport-managed call."""

    def __init__(
        self,
        base_url: str,
        transport: ResilientTransport,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self._http_transport = http_transport

    async def request_json(
        self,
        method: str,
        path: str,
        api_key: str,
        *,
        json_body: dict | None = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

        async def call(deadline_s: float) -> Any:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=deadline_s,
                transport=self._http_transport,
            ) as client:
                response = await client.request(method, path, headers=headers, json=json_body)
            check_response(response, SERVICE)
            try:
                return response.json()
            except ValueError:
                return _UNPARSABLE

        return await self.transport.execute(call, description=f"{method} {path}")


class LlamaCloudRetriever(KnowledgeRetriever):
    def __init__(
        self,
        client: LlamaCloudClient,
        api_key: str,
        pipeline_ids: list[str],
        top_k: int = RETRIEVER_TOP_K,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self.pipeline_ids = list(pipeline_ids)
        self.top_k = top_k

    async def _retrieve_one(self, pipeline_id: str, query: str) -> list[RetrievedNode]:
        payload = await self._client.request_json(
            "POST",
            f"/pipelines/{pipeline_id}/retrieve",
            self._api_key,
            json_body={"query": query, "dense_similarity_top_k": self.top_k},
        )
        parsed = parse_payload(_RETRIEVAL, payload, service=SERVICE, what="retrieval")
        nodes: list[RetrievedNode] = []
        for index, item in enumerate(parsed.retrieval_nodes):
            metadata = dict(item.node.metadata)
            metadata.setdefault("pipeline_id", pipeline_id)
            nodes.append(
                RetrievedNode(
                    text=item.node.text,
                    source_id=item.node.id_ or f"{pipeline_id}:{index}",
                    score=item.score or 0.0,
                    title=metadata.get("file_name"),
                    metadata=metadata,
                )
            )
        return nodes

    async def retrieve(self, query: str) -> list[RetrievedNode]:
        batches = await asyncio.gather(
            *(self._retrieve_one(pipeline_id, query) for pipeline_id in self.pipeline_ids)
        )
        merged = [node for batch in batches for node in batch]
        merged.sort(key=lambda node: node.score, reverse=True)
        return merged[: self.top_k]


class LlamaCloudProvider(DocumentIndexProvider):
    provider_type = "llamacloud"
    service_name = SERVICE

    def __init__(
        self,
        base_url: str | None = None,
        transport: ResilientTransport | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        top_k: int = RETRIEVER_TOP_K,
    ) -> None:
        super().__init__(transport)
        self.client = LlamaCloudClient(
            base_url or LLAMACLOUD_BASE_URL,
            self.transport,
            http_transport=http_transport,
        )
        self.top_k = top_k

    def _api_key(self, credentials: ProviderCredentials) -> str:
        return self._require(credentials, LlamaCloudCredentials).api_key

    async def verify_credentials_and_fetch_projects(
        self, credentials: ProviderCredentials
    ) -> list[IndexProject]:
        payload = await self.client.request_json("GET", "/projects", self._api_key(credentials))
        projects = parse_payload(_PROJECTS, _or_empty(payload), service=SERVICE, what="project list")
        return [IndexProject(**project.model_dump()) for project in projects]

    async def fetch_pipelines_for_project(
        self, credentials: ProviderCredentials, project_id: str
    ) -> list[IndexPipeline]:
        # The pipelines endpoint has no project filter; scope client-side.
        payload = await self.client.request_json("GET", "/pipelines", self._api_key(credentials))
        pipelines = parse_payload(_PIPELINES, _or_empty(payload), service=SERVICE, what="pipeline list")
        scoped = [IndexPipeline(**p.model_dump()) for p in pipelines if p.project_id == project_id]
        log.debug(
            "LlamaCloud returned %d pipelines, %d in project %s",
            len(pipelines),
            len(scoped),
            project_id,
        )
        return scoped

    async def fetch_documents_for_pipeline(
        self, credentials: ProviderCredentials, pipeline_id: str
    ) -> list[IndexDocument]:
        payload = await self.client.request_json(
            "GET", f"/pipelines/{pipeline_id}/files", self._api_key(credentials)
        )
        files = parse_payload(_FILES, _or_empty(payload), service=SERVICE, what="file list")
        return [
            IndexDocument(
                id=item.id,
                name=item.name,
                size=item.file_size,
                type=item.file_type,
                pipeline_id=item.pipeline_id or pipeline_id,
                last_modified=item.last_modified_at,
                status=item.status,
            )
            for item in files
        ]

    async def create_retriever(
        self,
        credentials: ProviderCredentials,
        project_id: str,
        pipeline_ids: list[str],
    ) -> LlamaCloudRetriever:
        log.debug("Binding LlamaCloud retriever to project %s pipelines %s", project_id, pipeline_ids)
        return LlamaCloudRetriever(
            self.client,
            self._api_key(credentials),
            pipeline_ids,
            top_k=self.top_k,
        )
