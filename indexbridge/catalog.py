"""Project-level listing of pipelines and their documents."""

from __future__ import annotations

import asyncio
import logging

from indexbridge.errors import IndexBridgeError
from indexbridge.models import IndexDocument, IndexPipeline, ProjectCatalog, ProviderCredentials
from indexbridge.providers.base import DocumentIndexProvider

log = logging.getLogger(__name__)


async def _documents_for(
    provider: DocumentIndexProvider,
    credentials: ProviderCredentials,
    pipeline: IndexPipeline,
) -> list[IndexDocument]:
    try:
        documents = await provider.fetch_documents_for_pipeline(credentials, pipeline.id)
    except IndexBridgeError as exc:
        log.warning("Failed to fetch documents for pipeline %s: %s", pipeline.name, exc)
        return []
    return [
        doc.model_copy(update={"pipeline_id": pipeline.id, "pipeline_name": pipeline.name})
        for doc in documents
    ]


async def collect_project_catalog(
    provider: DocumentIndexProvider,
    credentials: ProviderCredentials,
    project_id: str,
) -> ProjectCatalog:
    """List a project's pipelines and, concurrently, every pipeline's documents.

    A pipeline whose documents cannot be fetched contributes none; the pipeline
    listing itself must succeed.
    """
    pipelines = await provider.fetch_pipelines_for_project(credentials, project_id)
    batches = await asyncio.gather(
        *(_documents_for(provider, credentials, pipeline) for pipeline in pipelines)
    )
    documents = [doc for batch in batches for doc in batch]
    return ProjectCatalog(project_id=project_id, pipelines=pipelines, documents=documents)
