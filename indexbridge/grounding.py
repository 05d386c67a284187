"""Context rendering and provenance checks against retrieved sources."""

from __future__ import annotations

import logging

from indexbridge.models import InformationExtraction, ResponseSynthesis, RetrievedNode
from indexbridge.security import sanitize_text

log = logging.getLogger(__name__)


def render_context_blocks(nodes: list[RetrievedNode]) -> str:
    blocks: list[str] = []
    filtered_total = 0
    for idx, node in enumerate(nodes, start=1):
        text, filtered = sanitize_text(node.text)
        filtered_total += filtered
        block = (
            f"[{idx}] source_id={node.source_id} score={node.score:.4f} title={node.title or '-'}\n"
            f"text={text}"
        )
        blocks.append(block)
    if filtered_total:
        log.warning("Filtered %d suspicious lines from retrieved context", filtered_total)
    return "\n\n".join(blocks) or "(no documents retrieved)"


def node_lookup(nodes: list[RetrievedNode]) -> dict[str, RetrievedNode]:
    lookup: dict[str, RetrievedNode] = {}
    for node in nodes:
        current = lookup.get(node.source_id)
        if current is None or node.score > current.score:
            lookup[node.source_id] = node
    return lookup


def filter_facts_to_retrieved(extraction: InformationExtraction, known_ids: set[str]) -> int:
    """Drop facts attributed to sources that were never retrieved. Returns the drop count."""
    kept = [fact for fact in extraction.extracted_facts if fact.source in known_ids]
    dropped = len(extraction.extracted_facts) - len(kept)
    extraction.extracted_facts = kept
    return dropped


def filter_sources_to_retrieved(synthesis: ResponseSynthesis, known_ids: set[str]) -> int:
    kept = [source for source in synthesis.sources if source.id in known_ids]
    dropped = len(synthesis.sources) - len(kept)
    synthesis.sources = kept
    return dropped
