"""
Retriever module: the single query-time entry point.

Every caller (chat answers, summaries, question generation) goes through
RetrievalEngine.search(), which scores candidates against the query, ranks
them deterministically and packs the best ones into a character budget.

A candidate may or may not carry a usable vector. Those that do are scored by
cosine similarity; the rest (and every candidate when the query itself cannot
be embedded) are scored lexically. Nothing here raises on provider failures,
bad stored vectors, empty queries or budget exhaustion.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from temario.models.retrieval import (
    CandidateStatus,
    ContextBundle,
    RetrievalCandidate,
    RetrievalOptions,
    ScoredCandidate,
    ScoringMethod,
)
from temario.rag.embedder import (
    EmbeddingService,
    cosine_similarity,
    deserialize_embedding,
)
from temario.rag.lexical import article_passage, find_article_references, lexical_score

logger = logging.getLogger(__name__)

# Reasons a candidate was scored lexically instead of by vector
NO_VECTOR = "no_vector"
MALFORMED_VECTOR = "malformed_vector"
DIMENSION_MISMATCH = "dimension_mismatch"
MODEL_MISMATCH = "model_mismatch"
QUERY_UNAVAILABLE = "query_unavailable"


class RetrievalEngine:
    """Scores, ranks and packs retrieval candidates for a query.

    Args:
        embedding_service: Used for the query vector; its `model` is the tag
            stored vectors must carry to be compared.
    """

    def __init__(self, embedding_service: EmbeddingService):
        self.embedding_service = embedding_service

    async def search(
        self,
        query: str,
        candidates: Iterable[RetrievalCandidate],
        options: Optional[RetrievalOptions] = None,
    ) -> ContextBundle:
        """Build the Context Bundle for a query.

        Args:
            query: Free-text user query.
            candidates: Documents and/or sections to choose from.
            options: Budget, threshold and top-k; defaults from config.

        Returns:
            ContextBundle with the included candidates in rank order and the
            scoring trace of every candidate.
        """
        options = options or RetrievalOptions.from_config()

        if not query or not query.strip():
            logger.info("[RETRIEVER] Empty query, returning empty context")
            return ContextBundle(query=query or "", max_total_chars=options.max_total_chars)

        candidates = list(candidates)
        if not candidates:
            logger.info("[RETRIEVER] No candidates for query")
            return ContextBundle(query=query, max_total_chars=options.max_total_chars)

        query_vector = await self.embedding_service.embed_query(query)
        degraded = not query_vector
        if degraded:
            logger.warning(
                f"[RETRIEVER] Query embedding unavailable ({query_vector.reason}), "
                f"scoring {len(candidates)} candidates lexically"
            )
            query_vector = None

        scored = [
            self._score(query, query_vector, candidate, position, options)
            for position, candidate in enumerate(candidates)
        ]
        ranked = rank_candidates(scored)
        included = pack_context(ranked, options)

        bundle = ContextBundle(
            query=query,
            items=included,
            max_total_chars=options.max_total_chars,
            degraded=degraded,
            trace=ranked,
        )

        vector_count = sum(1 for s in scored if s.method is ScoringMethod.VECTOR)
        logger.info(
            f"[RETRIEVER] Included {len(included)}/{len(candidates)} candidates "
            f"({bundle.total_chars:,}/{options.max_total_chars:,} chars, "
            f"{vector_count} vector-scored) for query: {query[:80]}"
        )
        return bundle

    def _score(
        self,
        query: str,
        query_vector: Optional[List[float]],
        candidate: RetrievalCandidate,
        position: int,
        options: RetrievalOptions,
    ) -> ScoredCandidate:
        text = candidate_text(query, candidate.text or "", options.max_candidate_chars)

        stored, reason = self._usable_vector(query_vector, candidate)
        if stored is not None:
            score = max(0.0, cosine_similarity(query_vector, stored))
            method = ScoringMethod.VECTOR
        else:
            score = lexical_score(
                query,
                text,
                title=candidate.title,
                topic=candidate.topic,
                topic_filter=options.topic,
                topic_boost=options.topic_boost,
                article_boost=options.article_boost,
                title_boost=options.title_boost,
                alias_boost=options.alias_boost,
                law_boost=options.law_boost,
                syllabus_boost=options.syllabus_boost,
            )
            method = ScoringMethod.LEXICAL

        logger.debug(
            f"[RETRIEVER] {candidate.unit_id}: {score:.3f} ({method.value}"
            f"{', ' + reason if reason else ''})"
        )
        return ScoredCandidate(
            candidate=candidate,
            score=score,
            method=method,
            text=text,
            position=position,
            fallback_reason=reason,
        )

    def _usable_vector(
        self,
        query_vector: Optional[List[float]],
        candidate: RetrievalCandidate,
    ) -> Tuple[Optional[List[float]], Optional[str]]:
        """(stored vector, None) if the candidate can be vector-scored, else (None, reason)."""
        if query_vector is None:
            return None, QUERY_UNAVAILABLE
        if candidate.embedding is None or (
            isinstance(candidate.embedding, str) and not candidate.embedding.strip()
        ):
            return None, NO_VECTOR
        stored = deserialize_embedding(candidate.embedding)
        if stored is None:
            return None, MALFORMED_VECTOR
        if len(stored) != len(query_vector):
            return None, DIMENSION_MISMATCH
        # Untagged vectors predate model tagging and are taken as current
        if candidate.embedding_model and candidate.embedding_model != self.embedding_service.model:
            return None, MODEL_MISMATCH
        return stored, None


def candidate_text(query: str, text: str, max_chars: int) -> str:
    """Candidate text cut to `max_chars`.

    When the text is longer and the query cites an article found in it, the
    article's passage is kept instead of the head of the text.
    """
    if len(text) <= max_chars:
        return text
    for number in find_article_references(query):
        passage = article_passage(text, number, max_chars)
        if passage:
            logger.debug(f"[RETRIEVER] Keeping article {number} passage ({len(passage):,} chars)")
            return passage
    return text[:max_chars]


def rank_candidates(scored: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
    """Order by score descending, then shorter text, then input position.

    The key is a total order, so equal inputs always rank identically.
    """
    return sorted(scored, key=lambda s: (-s.score, len(s.text), s.position))


def pack_context(
    ranked: List[ScoredCandidate],
    options: RetrievalOptions,
) -> List[ScoredCandidate]:
    """Greedily include ranked candidates into the character budget.

    Candidates under the score threshold are dropped. A candidate that does
    not fit whole is skipped and the scan continues with the next one. A
    document is never included together with one of its own sections: the
    better-ranked unit wins and the other is marked DUPLICATE. Sets `status`
    on every candidate.

    Returns:
        The included candidates, in rank order.
    """
    included = []
    total_chars = 0
    # document_id -> whether it was included whole (True) or through sections (False)
    included_as = {}

    for item in ranked:
        whole = item.unit_id == item.document_id
        if item.score < options.min_score:
            item.status = CandidateStatus.BELOW_THRESHOLD
        elif _overlaps_included(included_as.get(item.document_id), whole):
            item.status = CandidateStatus.DUPLICATE
        elif len(included) >= options.top_k:
            item.status = CandidateStatus.TOP_K
        elif total_chars + len(item.text) > options.max_total_chars:
            item.status = CandidateStatus.OVER_BUDGET
            logger.debug(
                f"[RETRIEVER] Skipping {item.unit_id} ({len(item.text):,} chars), "
                f"budget {total_chars:,}/{options.max_total_chars:,}"
            )
        else:
            item.status = CandidateStatus.INCLUDED
            included.append(item)
            included_as[item.document_id] = whole
            total_chars += len(item.text)

    return included


def _overlaps_included(included_whole: Optional[bool], whole: bool) -> bool:
    """True if a unit repeats text of its document already in the context."""
    if included_whole is None:
        return False
    return included_whole or whole
