#!/usr/bin/env python3
"""
Test script for ranking, fallback scoring and context packing
"""
import asyncio
import logging

import pytest

from temario import config
from temario.models.retrieval import (
    CandidateStatus,
    RetrievalCandidate,
    RetrievalOptions,
    ScoredCandidate,
    ScoringMethod,
)
from temario.rag.embedder import EmbeddingProvider, EmbeddingService, serialize_embedding
from temario.rag.retriever import RetrievalEngine, candidate_text, pack_context, rank_candidates

MODEL = "test-model"


class KeyedProvider(EmbeddingProvider):
    """Known texts get their vector; anything else fails."""

    def __init__(self, vectors):
        self.vectors = vectors
        self.calls = 0

    async def embed(self, texts, model):
        self.calls += 1
        if texts[0] not in self.vectors:
            raise ValueError(f"no vector for {texts[0]!r}")
        return [self.vectors[texts[0]]]


class DownProvider(EmbeddingProvider):
    def __init__(self):
        self.calls = 0

    async def embed(self, texts, model):
        self.calls += 1
        raise ValueError("provider unavailable")


def _engine(provider):
    return RetrievalEngine(EmbeddingService(provider, model=MODEL, max_attempts=1, retry_wait_seconds=0))


def _options(**kwargs):
    values = {"max_total_chars": 10000, "min_score": 0.1, "top_k": 5, "max_candidate_chars": 50000}
    values.update(kwargs)
    return RetrievalOptions(**values)


def _candidate(unit_id, text, vector=None, model=None, title=None, topic=None):
    return RetrievalCandidate(
        unit_id=unit_id,
        document_id=unit_id,
        title=title or f"Documento {unit_id}",
        text=text,
        topic=topic,
        embedding=serialize_embedding(vector) if vector is not None else None,
        embedding_model=model,
    )


PENSION = "La jubilación anticipada permite acceder a la pensión antes de la edad ordinaria."
VACACIONES = "Las vacaciones anuales retribuidas no podrán ser inferiores a treinta días naturales."


def test_lexical_ranking_when_provider_is_down():
    provider = DownProvider()
    candidates = [_candidate("vac", VACACIONES), _candidate("jub", PENSION)]

    bundle = asyncio.run(_engine(provider).search("jubilación anticipada", candidates, _options()))

    assert bundle.degraded
    assert [item.unit_id for item in bundle.items] == ["jub"]
    assert bundle.items[0].method is ScoringMethod.LEXICAL
    assert bundle.items[0].fallback_reason == "query_unavailable"
    excluded = [item for item in bundle.trace if item.unit_id == "vac"][0]
    assert excluded.status is CandidateStatus.BELOW_THRESHOLD


def test_vector_ranking():
    provider = KeyedProvider({"jubilación anticipada": [1.0, 0.0]})
    candidates = [
        _candidate("vac", VACACIONES, vector=[0.0, 1.0], model=MODEL),
        _candidate("jub", PENSION, vector=[0.9, 0.1], model=MODEL),
    ]

    bundle = asyncio.run(_engine(provider).search("jubilación anticipada", candidates, _options()))

    assert not bundle.degraded
    assert [item.unit_id for item in bundle.items] == ["jub"]
    assert bundle.items[0].method is ScoringMethod.VECTOR
    assert 0.9 < bundle.items[0].score <= 1.0


def test_negative_similarity_is_clamped_to_zero():
    provider = KeyedProvider({"consulta": [1.0, 0.0]})
    candidates = [_candidate("a", "texto", vector=[-1.0, 0.0], model=MODEL)]

    bundle = asyncio.run(_engine(provider).search("consulta", candidates, _options(min_score=0.0)))

    assert bundle.trace[0].score == 0.0


def test_single_over_budget_candidate_gives_empty_bundle():
    provider = KeyedProvider({"consulta": [1.0, 0.0]})
    candidates = [_candidate("big", "x" * 500, vector=[1.0, 0.0], model=MODEL)]

    bundle = asyncio.run(_engine(provider).search("consulta", candidates, _options(max_total_chars=100)))

    assert bundle.is_empty
    assert bundle.total_chars == 0
    assert bundle.render() == ""
    assert bundle.trace[0].status is CandidateStatus.OVER_BUDGET


def test_packing_skips_what_does_not_fit_and_continues():
    provider = KeyedProvider({"consulta": [1.0, 0.0]})
    candidates = [
        _candidate("a", "a" * 60, vector=[1.0, 0.0], model=MODEL),
        _candidate("b", "b" * 50, vector=[0.9, 0.3], model=MODEL),
        _candidate("c", "c" * 30, vector=[0.7, 0.5], model=MODEL),
    ]

    bundle = asyncio.run(_engine(provider).search("consulta", candidates, _options(max_total_chars=100)))

    assert [item.unit_id for item in bundle.items] == ["a", "c"]
    assert bundle.total_chars == 90
    assert bundle.total_chars <= bundle.max_total_chars
    statuses = {item.unit_id: item.status for item in bundle.trace}
    assert statuses["b"] is CandidateStatus.OVER_BUDGET


def test_top_k_caps_included_candidates():
    provider = KeyedProvider({"consulta": [1.0, 0.0]})
    candidates = [_candidate(str(i), "texto", vector=[1.0, 0.1 * i], model=MODEL) for i in range(6)]

    bundle = asyncio.run(_engine(provider).search("consulta", candidates, _options(top_k=2)))

    assert [item.unit_id for item in bundle.items] == ["0", "1"]
    assert sum(1 for item in bundle.trace if item.status is CandidateStatus.TOP_K) == 4


def test_ties_break_on_length_then_input_order():
    candidates = [
        _candidate("largo", "jubilación anticipada y algo más"),
        _candidate("corto-1", "jubilación anticipada"),
        _candidate("corto-2", "jubilación anticipada"),
    ]
    engine = _engine(DownProvider())

    first = asyncio.run(engine.search("jubilación anticipada", candidates, _options()))
    second = asyncio.run(engine.search("jubilación anticipada", candidates, _options()))

    ids = [item.unit_id for item in first.items]
    assert ids == ["corto-1", "corto-2", "largo"]
    assert ids == [item.unit_id for item in second.items]


@pytest.mark.parametrize("embedding,model,reason", [
    (None, None, "no_vector"),
    ("not json", MODEL, "malformed_vector"),
    (serialize_embedding([1.0, 0.0, 0.0]), MODEL, "dimension_mismatch"),
    (serialize_embedding([1.0, 0.0]), "old-model", "model_mismatch"),
])
def test_unusable_vectors_fall_back_to_lexical(embedding, model, reason):
    provider = KeyedProvider({"jubilación anticipada": [1.0, 0.0]})
    candidate = RetrievalCandidate(
        unit_id="jub", document_id="jub", title="Pensiones", text=PENSION,
        embedding=embedding, embedding_model=model,
    )

    bundle = asyncio.run(_engine(provider).search("jubilación anticipada", [candidate], _options()))

    scored = bundle.trace[0]
    assert scored.method is ScoringMethod.LEXICAL
    assert scored.fallback_reason == reason
    assert scored.score == 1.0
    assert not bundle.degraded


def test_untagged_vector_is_used():
    provider = KeyedProvider({"consulta": [1.0, 0.0]})
    candidate = _candidate("a", "texto", vector=[1.0, 0.0], model=None)

    bundle = asyncio.run(_engine(provider).search("consulta", [candidate], _options()))

    assert bundle.items[0].method is ScoringMethod.VECTOR


def test_empty_query_makes_no_provider_call():
    provider = KeyedProvider({})
    bundle = asyncio.run(_engine(provider).search("   ", [_candidate("a", PENSION)], _options()))

    assert bundle.is_empty
    assert provider.calls == 0


def test_no_candidates_gives_empty_bundle():
    bundle = asyncio.run(_engine(KeyedProvider({})).search("consulta", [], _options()))
    assert bundle.is_empty
    assert not bundle.degraded


def test_candidate_text_is_truncated_before_packing():
    provider = KeyedProvider({"consulta": [1.0, 0.0]})
    candidates = [_candidate("a", "x" * 1000, vector=[1.0, 0.0], model=MODEL)]

    bundle = asyncio.run(_engine(provider).search(
        "consulta", candidates, _options(max_candidate_chars=100, max_total_chars=150),
    ))

    assert len(bundle.items[0].text) == 100


def test_render_and_citations_carry_attribution():
    provider = KeyedProvider({"consulta": [1.0, 0.0]})
    candidates = [_candidate("doc-1", "Texto del artículo.", vector=[1.0, 0.0], model=MODEL, title="Ley General")]

    bundle = asyncio.run(_engine(provider).search("consulta", candidates, _options()))

    assert bundle.citations() == [("doc-1", "Ley General", 1.0)]
    assert bundle.render().startswith("=== DOCUMENTO 1: Ley General [doc-1] (relevancia: 1.00) ===\n")
    assert bundle.to_dict()["items"][0]["method"] == "vector"


def test_rank_and_pack_helpers():
    provider = KeyedProvider({})
    engine = _engine(provider)
    options = _options(max_total_chars=20, min_score=0.5)
    scored = [
        engine._score("jubilación", None, _candidate("a", "jubilación"), 0, options),
        engine._score("jubilación", None, _candidate("b", "otra cosa"), 1, options),
    ]

    ranked = rank_candidates(scored)
    included = pack_context(ranked, options)

    assert [item.unit_id for item in ranked] == ["a", "b"]
    assert [item.unit_id for item in included] == ["a"]
    assert ranked[1].status is CandidateStatus.BELOW_THRESHOLD


@pytest.mark.parametrize("kwargs", [
    {"max_total_chars": -1}, {"top_k": -1}, {"max_candidate_chars": 0}, {"topic_boost": -0.1},
])
def test_invalid_options_are_rejected(kwargs):
    with pytest.raises(ValueError):
        _options(**kwargs)


def test_default_options_pack_a_long_vector_scored_document():
    provider = KeyedProvider({"consulta": [1.0, 0.0]})
    candidates = [_candidate("ley", "x" * 12000, vector=[1.0, 0.0], model=MODEL)]
    options = RetrievalOptions.from_config()

    bundle = asyncio.run(_engine(provider).search("consulta", candidates, options))

    assert options.max_candidate_chars <= options.max_total_chars
    assert bundle.trace[0].status is CandidateStatus.INCLUDED
    assert len(bundle.items[0].text) == config.MAX_CANDIDATE_CHARS


def test_candidate_cap_above_budget_is_logged(caplog):
    with caplog.at_level(logging.WARNING):
        RetrievalOptions.from_config(max_candidate_chars=config.CONTEXT_MAX_CHARS + 1)

    assert "exceeds the context budget" in caplog.text


LONG_LAW = "\n".join(f"Artículo {n}. {PENSION} {VACACIONES}" for n in range(1, 61))


def test_cited_article_survives_truncation():
    assert LONG_LAW.find("Artículo 45.") > 3500

    bundle = asyncio.run(_engine(DownProvider()).search(
        "¿Qué dice el artículo 45?",
        [_candidate("ley", LONG_LAW, title="Ley General")],
        _options(max_candidate_chars=3500),
    ))

    text = bundle.items[0].text
    assert text.startswith("Artículo 45.")
    assert "Artículo 46." not in text
    assert bundle.items[0].score == 1.0


def test_candidate_text_keeps_head_without_cited_article():
    assert candidate_text("jubilación", LONG_LAW, 100) == LONG_LAW[:100]
    assert candidate_text("artículo 99", LONG_LAW, 100) == LONG_LAW[:100]
    assert candidate_text("artículo 45", PENSION, 100) == PENSION


def _unit(unit_id, score, text, position):
    candidate = RetrievalCandidate(
        unit_id=unit_id, document_id=unit_id.split("#")[0], title=unit_id, text=text,
    )
    return ScoredCandidate(
        candidate=candidate, score=score, method=ScoringMethod.LEXICAL, text=text, position=position,
    )


def test_sections_of_an_included_document_are_duplicates():
    ranked = rank_candidates([
        _unit("ley", 0.9, PENSION + VACACIONES, 0),
        _unit("ley#0", 0.8, PENSION, 1),
        _unit("otra#0", 0.7, VACACIONES, 2),
    ])

    included = pack_context(ranked, _options())

    assert [item.unit_id for item in included] == ["ley", "otra#0"]
    assert ranked[1].status is CandidateStatus.DUPLICATE


def test_document_is_duplicate_once_its_sections_are_included():
    ranked = rank_candidates([
        _unit("ley#0", 0.9, PENSION, 0),
        _unit("ley", 0.8, PENSION + VACACIONES, 1),
        _unit("ley#1", 0.7, VACACIONES, 2),
    ])

    included = pack_context(ranked, _options())

    assert [item.unit_id for item in included] == ["ley#0", "ley#1"]
    statuses = {item.unit_id: item.status for item in ranked}
    assert statuses["ley"] is CandidateStatus.DUPLICATE
