"""Amazon Bedrock Knowledge Bases provider.

Knowledge bases map to projects and data sources map to pipelines. Bedrock does
not enumerate individual documents, so document listing always returns an empty
list.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import boto3
from botocore.config import Config
from pydantic import BaseModel, ConfigDict, TypeAdapter

from indexbridge.config import BEDROCK_PAGE_SIZE, RETRIEVER_TOP_K
from indexbridge.errors import PayloadValidationError
from indexbridge.models import (
    BedrockCredentials,
    IndexDocument,
    IndexPipeline,
    IndexProject,
    ProviderCredentials,
    RetrievedNode,
)
from indexbridge.providers.base import DocumentIndexProvider, KnowledgeRetriever, parse_payload
from indexbridge.transport import ResilientTransport

log = logging.getLogger(__name__)

SERVICE = "Bedrock"
DATA_SOURCE_METADATA_KEY = "x-amz-bedrock-kb-data-source-id"
CHUNK_ID_METADATA_KEY = "x-amz-bedrock-kb-chunk-id"

ClientFactory = Callable[[str, BedrockCredentials, float], Any]


def boto3_client_factory(service_name: str, credentials: BedrockCredentials, deadline_s: float):
    # A session per client; the default session is shared and not thread-safe.
    session = boto3.session.Session(
        aws_access_key_id=credentials.access_key_id,
        aws_secret_access_key=credentials.secret_access_key,
        region_name=credentials.region,
    )
    # Retries are owned by ResilientTransport, so botocore makes a single attempt.
    return session.client(
        service_name,
        config=Config(
            connect_timeout=deadline_s,
            read_timeout=deadline_s,
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore")


class KnowledgeBaseSummary(_Wire):
    knowledgeBaseId: str
    name: str
    description: str | None = None
    status: str | None = None
    updatedAt: datetime | None = None


class KnowledgeBasePage(_Wire):
    knowledgeBaseSummaries: list[KnowledgeBaseSummary] = []
    nextToken: str | None = None


class DataSourceSummary(_Wire):
    dataSourceId: str
    name: str
    description: str | None = None
    status: str | None = None
    updatedAt: datetime | None = None


class DataSourcePage(_Wire):
    dataSourceSummaries: list[DataSourceSummary] = []
    nextToken: str | None = None


class RetrievalContent(_Wire):
    text: str = ""


class RetrievalResult(_Wire):
    content: RetrievalContent
    location: dict[str, Any] | None = None
    score: float | None = None
    metadata: dict[str, Any] | None = None


class RetrieveResponse(_Wire):
    retrievalResults: list[RetrievalResult] = []


_KB_PAGE = TypeAdapter(KnowledgeBasePage)
_DS_PAGE = TypeAdapter(DataSourcePage)
_RETRIEVE = TypeAdapter(RetrieveResponse)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _location_uri(location: dict[str, Any] | None) -> str | None:
    if not location:
        return None
    for value in location.values():
        if isinstance(value, dict) and value.get("uri"):
            return value["uri"]
        if isinstance(value, dict) and value.get("url"):
            return value["url"]
    return None


class BedrockCaller:
    """Runs blocking boto3 calls in a worker thread under the transport's policy.

    A worker thread cannot be cancelled. When an attempt exceeds its deadline the
    transport moves on, while the abandoned boto3 call runs until botocore's own
    connect and read timeouts (set to the same deadline) end it.
    """

    def __init__(self, transport: ResilientTransport, client_factory: ClientFactory) -> None:
        self.transport = transport
        self._client_factory = client_factory

    async def call(
        self,
        credentials: BedrockCredentials,
        service_name: str,
        method: str,
        **params: Any,
    ) -> Any:
        def invoke(deadline_s: float) -> Any:
            client = self._client_factory(service_name, credentials, deadline_s)
            return getattr(client, method)(**params)

        async def attempt(deadline_s: float) -> Any:
            return await asyncio.to_thread(invoke, deadline_s)

        return await self.transport.execute(attempt, description=f"{service_name}.{method}")


class BedrockRetriever(KnowledgeRetriever):
    def __init__(
        self,
        caller: BedrockCaller,
        credentials: BedrockCredentials,
        knowledge_base_id: str,
        data_source_ids: list[str] | None = None,
        top_k: int = RETRIEVER_TOP_K,
    ) -> None:
        self._caller = caller
        self._credentials = credentials
        self.knowledge_base_id = knowledge_base_id
        self.data_source_ids = list(data_source_ids or [])
        self.top_k = top_k

    def _retrieval_configuration(self) -> dict[str, Any]:
        search: dict[str, Any] = {"numberOfResults": self.top_k}
        if self.data_source_ids:
            search["filter"] = {
                "in": {"key": DATA_SOURCE_METADATA_KEY, "value": self.data_source_ids}
            }
        return {"vectorSearchConfiguration": search}

    async def retrieve(self, query: str) -> list[RetrievedNode]:
        payload = await self._caller.call(
            self._credentials,
            "bedrock-agent-runtime",
            "retrieve",
            knowledgeBaseId=self.knowledge_base_id,
            retrievalQuery={"text": query},
            retrievalConfiguration=self._retrieval_configuration(),
        )
        parsed = parse_payload(_RETRIEVE, payload, service=SERVICE, what="retrieval")
        nodes: list[RetrievedNode] = []
        for index, result in enumerate(parsed.retrievalResults):
            metadata = dict(result.metadata or {})
            uri = _location_uri(result.location)
            source_id = metadata.get(CHUNK_ID_METADATA_KEY) or uri or f"result_{index}"
            metadata["knowledge_base_id"] = self.knowledge_base_id
            nodes.append(
                RetrievedNode(
                    text=result.content.text,
                    source_id=str(source_id),
                    score=result.score or 0.0,
                    title=uri,
                    metadata=metadata,
                )
            )
        nodes.sort(key=lambda node: node.score, reverse=True)
        return nodes


class BedrockProvider(DocumentIndexProvider):
    provider_type = "bedrock"
    service_name = SERVICE

    def __init__(
        self,
        transport: ResilientTransport | None = None,
        client_factory: ClientFactory | None = None,
        top_k: int = RETRIEVER_TOP_K,
        page_size: int = BEDROCK_PAGE_SIZE,
    ) -> None:
        super().__init__(transport)
        self.caller = BedrockCaller(self.transport, client_factory or boto3_client_factory)
        self.top_k = top_k
        self.page_size = page_size

    def _credentials(self, credentials: ProviderCredentials) -> BedrockCredentials:
        return self._require(credentials, BedrockCredentials)

    async def _paginate(
        self,
        credentials: BedrockCredentials,
        method: str,
        adapter: TypeAdapter,
        what: str,
        **params: Any,
    ) -> list:
        pages = []
        seen: set[str] = set()
        token: str | None = None
        while True:
            request = dict(params, maxResults=self.page_size)
            if token:
                request["nextToken"] = token
            payload = await self.caller.call(credentials, "bedrock-agent", method, **request)
            page = parse_payload(adapter, payload, service=SERVICE, what=what)
            pages.append(page)
            token = page.nextToken
            if not token:
                return pages
            if token in seen:
                raise PayloadValidationError(
                    f"{SERVICE} repeated pagination token while listing {what}"
                )
            seen.add(token)

    async def verify_credentials_and_fetch_projects(
        self, credentials: ProviderCredentials
    ) -> list[IndexProject]:
        pages = await self._paginate(
            self._credentials(credentials),
            "list_knowledge_bases",
            _KB_PAGE,
            "knowledge base list",
        )
        return [
            IndexProject(
                id=kb.knowledgeBaseId,
                name=kb.name,
                description=kb.description,
                created_at=None,
                updated_at=_iso(kb.updatedAt),
            )
            for page in pages
            for kb in page.knowledgeBaseSummaries
        ]

    async def fetch_pipelines_for_project(
        self, credentials: ProviderCredentials, project_id: str
    ) -> list[IndexPipeline]:
        # Data sources are listed per knowledge base, already scoped server-side.
        pages = await self._paginate(
            self._credentials(credentials),
            "list_data_sources",
            _DS_PAGE,
            "data source list",
            knowledgeBaseId=project_id,
        )
        return [
            IndexPipeline(
                id=ds.dataSourceId,
                name=ds.name,
                project_id=project_id,
                description=ds.description,
                status=ds.status,
                created_at=None,
                updated_at=_iso(ds.updatedAt),
            )
            for page in pages
            for ds in page.dataSourceSummaries
        ]

    async def fetch_documents_for_pipeline(
        self, credentials: ProviderCredentials, pipeline_id: str
    ) -> list[IndexDocument]:
        self._credentials(credentials)
        log.info(
            "Bedrock does not list individual documents; data source %s reports none",
            pipeline_id,
        )
        return []

    async def create_retriever(
        self,
        credentials: ProviderCredentials,
        project_id: str,
        pipeline_ids: list[str],
    ) -> BedrockRetriever:
        return BedrockRetriever(
            self.caller,
            self._credentials(credentials),
            knowledge_base_id=project_id,
            data_source_ids=pipeline_ids,
            top_k=self.top_k,
        )
