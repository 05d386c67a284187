import asyncio
from datetime import datetime, timezone

from botocore.exceptions import ClientError, EndpointConnectionError

from indexbridge.errors import (
    PayloadValidationError,
    ProviderAccessError,
    ProviderConnectionError,
)
from indexbridge.models import BedrockCredentials
from indexbridge.providers.bedrock import DATA_SOURCE_METADATA_KEY, BedrockProvider
from indexbridge.transport import ResilientTransport

CREDS = BedrockCredentials(access_key_id="AKIAEXAMPLE", secret_access_key="secret", region="us-east-1")


async def _no_sleep(delay: float) -> None:
    del delay


class FakeBedrock:
    """Stands in for both bedrock-agent and bedrock-agent-runtime clients."""

    def __init__(self, responses: dict[str, list]):
        self.responses = {name: list(items) for name, items in responses.items()}
        self.calls: list[tuple[str, str, dict]] = []
        self.services: list[str] = []

    def factory(self, service_name, credentials, deadline_s):
        assert credentials == CREDS
        assert deadline_s == 5
        self.services.append(service_name)
        return _BoundClient(self, service_name)


class _BoundClient:
    def __init__(self, fake: FakeBedrock, service_name: str):
        self._fake = fake
        self._service = service_name

    def __getattr__(self, method):
        def call(**params):
            self._fake.calls.append((self._service, method, params))
            result = self._fake.responses[method].pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        return call


def _provider(fake: FakeBedrock, page_size: int = 2, top_k: int = 10) -> BedrockProvider:
    return BedrockProvider(
        transport=ResilientTransport(retry_attempts=3, timeout_s=5, service="Bedrock", sleep=_no_sleep),
        client_factory=fake.factory,
        top_k=top_k,
        page_size=page_size,
    )


def _kb(kb_id: str) -> dict:
    return {
        "knowledgeBaseId": kb_id,
        "name": f"KB {kb_id}",
        "status": "ACTIVE",
        "updatedAt": datetime(2024, 3, 1, tzinfo=timezone.utc),
    }


def test_projects_follow_pagination() -> None:
    fake = FakeBedrock(
        {
            "list_knowledge_bases": [
                {"knowledgeBaseSummaries": [_kb("kb-1"), _kb("kb-2")], "nextToken": "page-2"},
                {"knowledgeBaseSummaries": [_kb("kb-3")]},
            ]
        }
    )
    projects = asyncio.run(_provider(fake).verify_credentials_and_fetch_projects(CREDS))
    assert [p.id for p in projects] == ["kb-1", "kb-2", "kb-3"]
    assert projects[0].updated_at == "2024-03-01T00:00:00+00:00"
    first, second = (params for _, _, params in fake.calls)
    assert first == {"maxResults": 2}
    assert second == {"maxResults": 2, "nextToken": "page-2"}
    assert fake.services == ["bedrock-agent", "bedrock-agent"]


def test_data_sources_become_pipelines() -> None:
    fake = FakeBedrock(
        {
            "list_data_sources": [
                {
                    "dataSourceSummaries": [
                        {"dataSourceId": "ds-1", "name": "S3 docs", "status": "AVAILABLE"}
                    ]
                }
            ]
        }
    )
    pipelines = asyncio.run(_provider(fake).fetch_pipelines_for_project(CREDS, "kb-1"))
    assert pipelines[0].id == "ds-1"
    assert pipelines[0].project_id == "kb-1"
    assert fake.calls[0][2]["knowledgeBaseId"] == "kb-1"


def test_documents_are_always_empty() -> None:
    fake = FakeBedrock({})
    assert asyncio.run(_provider(fake).fetch_documents_for_pipeline(CREDS, "ds-1")) == []
    assert fake.calls == []


def test_access_denied_is_not_retried() -> None:
    denied = ClientError(
        {"Error": {"Code": "AccessDeniedException", "Message": "no"}, "ResponseMetadata": {"HTTPStatusCode": 403}},
        "ListKnowledgeBases",
    )
    fake = FakeBedrock({"list_knowledge_bases": [denied, {"knowledgeBaseSummaries": []}]})
    try:
        asyncio.run(_provider(fake).verify_credentials_and_fetch_projects(CREDS))
        raise AssertionError("Expected ProviderAccessError.")
    except ProviderAccessError:
        pass
    assert len(fake.calls) == 1


def test_endpoint_errors_are_retried() -> None:
    down = EndpointConnectionError(endpoint_url="https://bedrock-agent.us-east-1.amazonaws.com")
    fake = FakeBedrock({"list_knowledge_bases": [down, down, down]})
    try:
        asyncio.run(_provider(fake).verify_credentials_and_fetch_projects(CREDS))
        raise AssertionError("Expected ProviderConnectionError.")
    except ProviderConnectionError as exc:
        assert "after 3 attempts" in str(exc)
    assert len(fake.calls) == 3


def test_malformed_page_rejected() -> None:
    fake = FakeBedrock({"list_knowledge_bases": [{"knowledgeBaseSummaries": [{"name": "no id"}]}]})
    try:
        asyncio.run(_provider(fake).verify_credentials_and_fetch_projects(CREDS))
        raise AssertionError("Expected PayloadValidationError.")
    except PayloadValidationError:
        pass


def test_retriever_filters_data_sources_and_orders_by_score() -> None:
    fake = FakeBedrock(
        {
            "retrieve": [
                {
                    "retrievalResults": [
                        {
                            "content": {"text": "low"},
                            "location": {"s3Location": {"uri": "s3://docs/low.pdf"}},
                            "score": 0.2,
                        },
                        {
                            "content": {"text": "high"},
                            "location": {"s3Location": {"uri": "s3://docs/high.pdf"}},
                            "score": 0.9,
                            "metadata": {"x-amz-bedrock-kb-chunk-id": "chunk-9"},
                        },
                    ]
                }
            ]
        }
    )
    provider = _provider(fake, top_k=4)

    async def run():
        retriever = await provider.create_retriever(CREDS, "kb-1", ["ds-1", "ds-2"])
        return await retriever.retrieve("rotation policy")

    nodes = asyncio.run(run())
    assert [n.text for n in nodes] == ["high", "low"]
    assert nodes[0].source_id == "chunk-9"
    assert nodes[1].source_id == "s3://docs/low.pdf"

    service, method, params = fake.calls[0]
    assert (service, method) == ("bedrock-agent-runtime", "retrieve")
    assert params["knowledgeBaseId"] == "kb-1"
    assert params["retrievalQuery"] == {"text": "rotation policy"}
    search = params["retrievalConfiguration"]["vectorSearchConfiguration"]
    assert search["numberOfResults"] == 4
    assert search["filter"] == {"in": {"key": DATA_SOURCE_METADATA_KEY, "value": ["ds-1", "ds-2"]}}


def test_retriever_without_data_sources_has_no_filter() -> None:
    fake = FakeBedrock({"retrieve": [{"retrievalResults": []}]})
    provider = _provider(fake)

    async def run():
        retriever = await provider.create_retriever(CREDS, "kb-1", [])
        return await retriever.retrieve("q")

    assert asyncio.run(run()) == []
    search = fake.calls[0][2]["retrievalConfiguration"]["vectorSearchConfiguration"]
    assert "filter" not in search


def test_list_apis_report_no_creation_time() -> None:
    fake = FakeBedrock(
        {
            "list_knowledge_bases": [{"knowledgeBaseSummaries": [_kb("kb-1")]}],
            "list_data_sources": [
                {
                    "dataSourceSummaries": [
                        {
                            "dataSourceId": "ds-1",
                            "name": "S3 docs",
                            "updatedAt": datetime(2024, 3, 1, tzinfo=timezone.utc),
                        }
                    ]
                }
            ],
        }
    )
    provider = _provider(fake)
    project = asyncio.run(provider.verify_credentials_and_fetch_projects(CREDS))[0]
    pipeline = asyncio.run(provider.fetch_pipelines_for_project(CREDS, "kb-1"))[0]
    assert project.created_at is None
    assert pipeline.created_at is None
    assert pipeline.updated_at == "2024-03-01T00:00:00+00:00"


def test_repeated_pagination_token_is_rejected() -> None:
    page = {"knowledgeBaseSummaries": [_kb("kb-1")], "nextToken": "same"}
    fake = FakeBedrock({"list_knowledge_bases": [page] * 5})
    try:
        asyncio.run(_provider(fake).verify_credentials_and_fetch_projects(CREDS))
        raise AssertionError("Expected PayloadValidationError for a repeated token.")
    except PayloadValidationError as exc:
        assert "pagination token" in str(exc)
    assert len(fake.calls) == 2


def test_default_client_factory_uses_a_private_session(monkeypatch) -> None:
    from indexbridge.providers import bedrock

    sessions = []

    class RecordingSession:
        def __init__(self, **kwargs):
            self.kwargs = kwargs
            sessions.append(self)

        def client(self, service_name, config):
            return (service_name, config)

    monkeypatch.setattr(bedrock.boto3.session, "Session", RecordingSession)
    service, config = bedrock.boto3_client_factory("bedrock-agent", CREDS, 7.0)
    bedrock.boto3_client_factory("bedrock-agent", CREDS, 7.0)
    assert service == "bedrock-agent"
    assert len(sessions) == 2
    assert sessions[0].kwargs == {
        "aws_access_key_id": "AKIAEXAMPLE",
        "aws_secret_access_key": "secret",
        "region_name": "us-east-1",
    }
    assert config.read_timeout == 7.0
    assert config.retries == {"max_attempts": 1, "mode": "standard"}
