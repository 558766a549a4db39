"""Persistent corpus records.

A `Document` owns its `Section` rows; deleting the document deletes them.
`SectionDraft` is what the chunker produces before a document id exists.
"""
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class SectionDraft:
    """A titled unit of text produced by the chunker.

    Attributes:
        title: Marker-derived title ("Artículo 42") or positional ("Sección 3").
        content: Section body text.
        order: 0-based position in document order.
    """
    title: str
    content: str
    order: int


@dataclass
class Section:
    id: int
    document_id: str
    title: str
    content: str
    order: int


@dataclass
class Document:
    """A legal/reference text ingested into the corpus.

    Attributes:
        id: Document identifier (uuid4 hex unless supplied by the caller).
        title: Human-readable title used for attribution.
        content: Full raw text as handed over by the extraction step.
        topic: Optional topic/category tag used as a retrieval filter.
        reference: Optional legal reference (e.g. "RDL 8/2015").
        embedding: Serialized whole-document vector (JSON array) or None.
        embedding_model: Model that produced `embedding`.
        processed_at: ISO timestamp of the last (re-)ingestion.
        active: Inactive documents are never retrieval candidates.
        sections: Sections in order, when loaded.
    """
    id: str
    title: str
    content: str
    topic: Optional[str] = None
    reference: Optional[str] = None
    embedding: Optional[str] = None
    embedding_model: Optional[str] = None
    processed_at: Optional[str] = None
    active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    sections: List[Section] = field(default_factory=list)

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)
