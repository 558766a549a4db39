"""
Ingestion orchestrator: Chunker -> Embedding Service -> Document Store.

A document whose embedding cannot be produced is still stored (without a
vector) and is scored lexically at query time until the reconciliation job
embeds it.
"""

import asyncio
import logging
import math
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from temario import config
from temario.document_store import DocumentStore
from temario.exceptions import DocumentNotFoundError, EmptyDocumentError, TemarioError
from temario.models.document import Document
from temario.rag import chunker
from temario.rag.embedder import EmbeddingService, serialize_embedding

logger = logging.getLogger(__name__)


async def run_blocking(func, *args, **kwargs):
    """Run a blocking (sqlite) call in the default executor, off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def build_embedding_text(
    title: str,
    content: str,
    reference: Optional[str] = None,
    topic: Optional[str] = None,
) -> str:
    """Text submitted for a document's vector: metadata header, then content."""
    text = f"{title}\n\n"
    if reference:
        text += f"Referencia: {reference}\n"
    if topic:
        text += f"Tema: {topic}\n"
    text += f"\nContenido:\n{content}"
    return text


def estimate_tokens(text: str) -> int:
    """Rough token count (1 token ~ 4 characters)."""
    return math.ceil(len(text) / 4)


async def _embed(service: EmbeddingService, title, content, reference, topic) -> Optional[str]:
    vector = await service.embed_document(
        build_embedding_text(title, content, reference=reference, topic=topic)
    )
    if not vector:
        logger.warning(
            f"[INGEST] Embedding unavailable for '{title}' ({vector.reason}), "
            f"storing without vector"
        )
        return None
    return serialize_embedding(vector)


async def ingest_document(
    store: DocumentStore,
    service: EmbeddingService,
    title: str,
    content: str,
    topic: Optional[str] = None,
    reference: Optional[str] = None,
    document_id: Optional[str] = None,
) -> Document:
    """Section, embed and persist a new document.

    Raises:
        EmptyDocumentError: If the text yields no sections.
        DocumentIntegrityError: If `document_id` already exists.
    """
    sections = chunker.section(content)
    if not sections:
        raise EmptyDocumentError(f"Document '{title}' has no content to index")

    embedding = await _embed(service, title, content, reference, topic)
    document = await run_blocking(
        store.create_document,
        title=title,
        content=content,
        sections=sections,
        topic=topic,
        reference=reference,
        embedding=embedding,
        embedding_model=service.model if embedding else None,
        document_id=document_id,
    )
    logger.info(
        f"[INGEST] Ingested '{title}' ({document.id}): {len(sections)} sections, "
        f"embedding {'stored' if embedding else 'pending'}"
    )
    return document


async def reingest_document(
    store: DocumentStore,
    service: EmbeddingService,
    document_id: str,
    content: str,
    title: Optional[str] = None,
    topic: Optional[str] = None,
    reference: Optional[str] = None,
) -> Document:
    """Replace a document's content and sections, and re-embed it.

    Metadata not given keeps its stored value.

    Raises:
        DocumentNotFoundError: If the document does not exist.
        EmptyDocumentError: If the new text yields no sections.
    """
    existing = await run_blocking(store.get_document, document_id, include_sections=False)
    if existing is None:
        raise DocumentNotFoundError(document_id)

    title = title if title is not None else existing.title
    topic = topic if topic is not None else existing.topic
    reference = reference if reference is not None else existing.reference

    sections = chunker.section(content)
    if not sections:
        raise EmptyDocumentError(f"Document '{title}' has no content to index")

    embedding = await _embed(service, title, content, reference, topic)
    document = await run_blocking(
        store.replace_document,
        document_id,
        title=title,
        content=content,
        sections=sections,
        topic=topic,
        reference=reference,
        embedding=embedding,
        embedding_model=service.model if embedding else None,
    )
    logger.info(f"[INGEST] Re-ingested '{title}' ({document_id}): {len(sections)} sections")
    return document


@dataclass
class ReconcileSummary:
    """Outcome of one reconciliation run.

    `skipped` counts documents whose embedding stayed unavailable; `failed`
    counts documents that could not be written back.
    """
    mode: str
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    estimated_tokens: int = 0
    failed_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def reconcile_embeddings(
    store: DocumentStore,
    service: EmbeddingService,
    mode: str = "missing",
    batch_size: Optional[int] = None,
    delay_seconds: Optional[float] = None,
) -> ReconcileSummary:
    """Embed documents that lack a current vector.

    Args:
        mode: "missing", "stale" (tagged with another model) or "all".
        batch_size: Documents embedded concurrently per batch.
        delay_seconds: Pause between batches.

    Each document is handled independently; one failure never aborts the run.
    """
    batch_size = max(1, batch_size or config.RECONCILE_BATCH_SIZE)
    delay_seconds = config.RECONCILE_DELAY_SECONDS if delay_seconds is None else delay_seconds

    documents = await run_blocking(store.documents_needing_embedding, mode=mode, model=service.model)
    summary = ReconcileSummary(mode=mode)
    logger.info(f"[INGEST] Reconciling embeddings (mode={mode}): {len(documents)} documents")

    async def _process(document: Document):
        text = build_embedding_text(
            document.title, document.content,
            reference=document.reference, topic=document.topic,
        )
        vector = await service.embed_document(text)
        if not vector:
            logger.warning(f"[INGEST] [{document.title}] Embedding unavailable: {vector.reason}")
            summary.skipped += 1
            return
        try:
            await run_blocking(store.update_embedding, document.id, serialize_embedding(vector), service.model)
        except (TemarioError, sqlite3.Error) as e:
            logger.error(f"[INGEST] [{document.title}] Could not store embedding: {e}")
            summary.failed += 1
            summary.failed_ids.append(document.id)
            return
        summary.succeeded += 1
        summary.estimated_tokens += estimate_tokens(text[:service.max_input_chars])
        logger.info(f"[INGEST] [{document.title}] Embedding stored ({len(vector)} dimensions)")

    for start in range(0, len(documents), batch_size):
        batch = documents[start:start + batch_size]
        await asyncio.gather(*[_process(document) for document in batch])
        summary.processed += len(batch)
        if start + batch_size < len(documents) and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

    logger.info(
        f"[INGEST] Reconcile done: {summary.succeeded} embedded, {summary.skipped} skipped, "
        f"{summary.failed} failed, ~{summary.estimated_tokens:,} tokens"
    )
    return summary
