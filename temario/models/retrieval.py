"""Query-time models: candidates, scoring trace and the Context Bundle.

None of these are persisted; their lifetime is a single `search` call.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from temario import config

logger = logging.getLogger(__name__)


class ScoringMethod(Enum):
    """How a candidate's relevance was computed."""
    VECTOR = "vector"
    LEXICAL = "lexical"


class CandidateStatus(Enum):
    """What happened to a candidate during ranking and packing."""
    INCLUDED = "included"
    BELOW_THRESHOLD = "below_threshold"
    OVER_BUDGET = "over_budget"
    TOP_K = "top_k"
    # Text already covered by an included unit of the same document
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class RetrievalCandidate:
    """A unit (document or section) offered to the retrieval engine.

    Attributes:
        unit_id: Identifier of the unit (document id, or "<document_id>#<order>" for sections).
        document_id: Owning document, used for attribution.
        title: Title used for attribution and lexical matching.
        text: Candidate text.
        topic: Optional topic tag of the owning document.
        embedding: Stored vector, serialized (JSON string) or already decoded; None if never embedded.
        embedding_model: Model tag stored with the vector.
    """
    unit_id: str
    document_id: str
    title: str
    text: str
    topic: Optional[str] = None
    embedding: Optional[Union[str, Sequence[float]]] = None
    embedding_model: Optional[str] = None


@dataclass
class ScoredCandidate:
    candidate: RetrievalCandidate
    score: float
    method: ScoringMethod
    text: str
    position: int
    status: Optional[CandidateStatus] = None
    # Why the stored vector was not used, when method is LEXICAL
    fallback_reason: Optional[str] = None

    @property
    def unit_id(self) -> str:
        return self.candidate.unit_id

    @property
    def document_id(self) -> str:
        return self.candidate.document_id

    @property
    def title(self) -> str:
        return self.candidate.title

    def to_dict(self, include_text: bool = True) -> Dict[str, Any]:
        data = {
            "unit_id": self.unit_id,
            "document_id": self.document_id,
            "title": self.title,
            "score": round(self.score, 6),
            "method": self.method.value,
            "status": self.status.value if self.status else None,
            "fallback_reason": self.fallback_reason,
            "char_count": len(self.text),
        }
        if include_text:
            data["text"] = self.text
        return data


@dataclass
class RetrievalOptions:
    """Per-query knobs. Defaults come from `temario.config`.

    Attributes:
        max_total_chars: Budget for the combined text of included candidates.
        min_score: Candidates scoring below this are discarded.
        top_k: Maximum number of included candidates.
        max_candidate_chars: Candidate text is cut to this length before scoring, keeping
            the passage of an article cited in the query when the text is longer.
        topic: Optional topic filter; matching candidates get a lexical boost.
        topic_boost: Multiplicative lexical boost for a topic match.
        article_boost: Additive lexical boost when a cited article appears in the text.
        title_boost: Additive lexical boost scaled by the share of query tokens in the title.
        alias_boost: Additive lexical boost when the query names a law the title carries.
        law_boost: Multiplicative lexical boost for law documents on legal queries.
        syllabus_boost: Multiplicative lexical boost for syllabus topics on "tema" queries.
    """
    max_total_chars: int = config.CONTEXT_MAX_CHARS
    min_score: float = config.MIN_RELEVANCE_SCORE
    top_k: int = config.RETRIEVAL_TOP_K
    max_candidate_chars: int = config.MAX_CANDIDATE_CHARS
    topic: Optional[str] = None
    topic_boost: float = config.TOPIC_BOOST
    article_boost: float = config.ARTICLE_MATCH_BOOST
    title_boost: float = config.TITLE_MATCH_BOOST
    alias_boost: float = config.LAW_ALIAS_BOOST
    law_boost: float = config.LAW_DOCUMENT_BOOST
    syllabus_boost: float = config.SYLLABUS_DOCUMENT_BOOST

    def __post_init__(self):
        if self.max_total_chars < 0:
            raise ValueError("max_total_chars cannot be negative")
        if self.top_k < 0:
            raise ValueError("top_k cannot be negative")
        if self.max_candidate_chars <= 0:
            raise ValueError("max_candidate_chars must be positive")
        boosts = (self.topic_boost, self.article_boost, self.title_boost,
                  self.alias_boost, self.law_boost, self.syllabus_boost)
        if any(boost < 0 for boost in boosts):
            raise ValueError("boosts cannot be negative")

    @classmethod
    def from_config(cls, **overrides) -> "RetrievalOptions":
        """Build options from the current config values, applying non-None overrides."""
        values = {
            "max_total_chars": config.CONTEXT_MAX_CHARS,
            "min_score": config.MIN_RELEVANCE_SCORE,
            "top_k": config.RETRIEVAL_TOP_K,
            "max_candidate_chars": config.MAX_CANDIDATE_CHARS,
            "topic_boost": config.TOPIC_BOOST,
            "article_boost": config.ARTICLE_MATCH_BOOST,
            "title_boost": config.TITLE_MATCH_BOOST,
            "alias_boost": config.LAW_ALIAS_BOOST,
            "law_boost": config.LAW_DOCUMENT_BOOST,
            "syllabus_boost": config.SYLLABUS_DOCUMENT_BOOST,
        }
        overrides = {key: value for key, value in overrides.items() if value is not None}
        values.update(overrides)
        if "max_total_chars" not in overrides and values["max_candidate_chars"] > values["max_total_chars"]:
            logger.warning(
                f"[RETRIEVER] max_candidate_chars ({values['max_candidate_chars']:,}) exceeds the "
                f"context budget ({values['max_total_chars']:,}); full-length candidates will never fit"
            )
        return cls(**values)


@dataclass
class ContextBundle:
    """Ranked, budgeted passages handed to the answer generator.

    `items` holds the included candidates in rank order. `trace` holds every
    scored candidate (included or not) in rank order for logging.
    """
    query: str
    items: List[ScoredCandidate] = field(default_factory=list)
    max_total_chars: int = 0
    degraded: bool = False
    trace: List[ScoredCandidate] = field(default_factory=list)

    @property
    def total_chars(self) -> int:
        return sum(len(item.text) for item in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def citations(self) -> List[Tuple[str, str, float]]:
        """(document_id, title, score) for each included passage, in rank order."""
        return [(item.document_id, item.title, item.score) for item in self.items]

    def render(self) -> str:
        """Format the included passages with attribution headers."""
        parts = []
        for idx, item in enumerate(self.items, 1):
            parts.append(
                f"=== DOCUMENTO {idx}: {item.title} [{item.document_id}] "
                f"(relevancia: {item.score:.2f}) ===\n"
                f"{item.text}"
            )
        return "\n\n".join(parts)

    def to_dict(self, include_trace: bool = True) -> Dict[str, Any]:
        data = {
            "query": self.query,
            "degraded": self.degraded,
            "total_chars": self.total_chars,
            "max_total_chars": self.max_total_chars,
            "items": [item.to_dict() for item in self.items],
            "context": self.render(),
        }
        if include_trace:
            data["trace"] = [item.to_dict(include_text=False) for item in self.trace]
        return data
