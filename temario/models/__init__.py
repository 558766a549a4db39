"""Data models shared by the store, the ingestion pipeline and the retrieval engine."""
from temario.models.document import Document, Section, SectionDraft
from temario.models.retrieval import (
    CandidateStatus,
    ContextBundle,
    RetrievalCandidate,
    RetrievalOptions,
    ScoredCandidate,
    ScoringMethod,
)

__all__ = [
    "CandidateStatus",
    "ContextBundle",
    "Document",
    "RetrievalCandidate",
    "RetrievalOptions",
    "ScoredCandidate",
    "ScoringMethod",
    "Section",
    "SectionDraft",
]
