#!/usr/bin/env python3
"""
Test script for the HTTP API (FastAPI TestClient, fake embedding provider)
"""
import os
import sqlite3
import tempfile
import threading
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from temario.document_store import DocumentStore
from temario.main import create_app
from temario.rag.embedder import EmbeddingProvider, EmbeddingService

LEY = "\n\n".join([
    "Artículo 205. Tendrán derecho a la pensión de jubilación anticipada las personas que "
    "acrediten un periodo mínimo de cotización efectiva de treinta y cinco años.",
    "Artículo 206. La edad mínima de acceso a la jubilación podrá ser rebajada en aquellos grupos "
    "de actividades profesionales de naturaleza excepcionalmente penosa o tóxica.",
])

VACACIONES = (
    "Artículo 38. El periodo de vacaciones anuales retribuidas, no sustituible por compensación "
    "económica, será el pactado en convenio colectivo o contrato individual."
)


class WordProvider(EmbeddingProvider):
    """Two-dimensional vectors: [mentions jubilación, mentions vacaciones]."""

    async def embed(self, texts, model):
        text = texts[0].lower()
        return [[1.0 if "jubilación" in text else 0.0, 1.0 if "vacaciones" in text else 0.0]]


@pytest.fixture
def client():
    with tempfile.TemporaryDirectory() as tmp:
        store = DocumentStore(os.path.join(tmp, "documents.db"))
        service = EmbeddingService(WordProvider(), model="test-model", max_attempts=1)
        with TestClient(create_app(store=store, embedding_service=service)) as test_client:
            yield test_client


def _ingest(client, title, content, **extra):
    response = client.post("/documents", json={"title": title, "content": content, **extra})
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    assert client.get("/").json()["status"] == "ok"


def test_ingest_and_get_document(client):
    created = _ingest(client, "Ley General de la Seguridad Social", LEY, topic="Pensiones", id="lgss")

    assert created["id"] == "lgss"
    assert created["has_embedding"]
    assert [s["title"] for s in created["sections"]] == ["Artículo 205", "Artículo 206"]

    detail = client.get("/documents/lgss").json()
    assert detail["content"] == LEY
    assert detail["embedding_model"] == "test-model"


def test_errors_map_to_status_codes(client):
    assert client.post("/documents", json={"title": "Vacía", "content": "  "}).status_code == 400
    _ingest(client, "Ley", LEY, id="dup")
    assert client.post("/documents", json={"title": "Ley", "content": LEY, "id": "dup"}).status_code == 409
    assert client.get("/documents/nope").status_code == 404
    assert client.put("/documents/nope", json={"content": LEY}).status_code == 404
    assert client.delete("/documents/nope").status_code == 404


def test_search_returns_attributed_context(client):
    _ingest(client, "Ley General de la Seguridad Social", LEY, id="lgss")
    _ingest(client, "Estatuto de los Trabajadores", VACACIONES, id="et")

    response = client.post("/search", json={"query": "jubilación anticipada"})

    assert response.status_code == 200
    bundle = response.json()
    assert [item["document_id"] for item in bundle["items"]] == ["lgss"]
    assert bundle["context"].startswith("=== DOCUMENTO 1: Ley General de la Seguridad Social [lgss]")
    assert bundle["total_chars"] <= bundle["max_total_chars"]
    assert {item["unit_id"] for item in bundle["trace"]} == {"lgss", "et"}


def test_section_search_and_budget(client):
    _ingest(client, "Ley General de la Seguridad Social", LEY, id="lgss")

    bundle = client.post("/search", json={
        "query": "jubilación anticipada", "granularity": "section", "max_total_chars": 200,
    }).json()

    assert [item["unit_id"] for item in bundle["items"]] == ["lgss#0"]
    assert bundle["items"][0]["method"] == "lexical"

    empty = client.post("/search", json={"query": "jubilación", "max_total_chars": 10}).json()
    assert empty["items"] == []
    assert empty["context"] == ""


def test_search_rejects_bad_options(client):
    response = client.post("/search", json={"query": "jubilación", "top_k": -1})
    assert response.status_code == 400


def test_update_soft_and_hard_delete(client):
    _ingest(client, "Ley", LEY, id="lgss")

    updated = client.put("/documents/lgss", json={"content": VACACIONES}).json()
    assert [s["title"] for s in updated["sections"]] == ["Artículo 38"]
    assert updated["title"] == "Ley"

    assert client.delete("/documents/lgss?soft=true").json()["status"] == "deactivated"
    assert client.get("/documents").json()["documents"] == []
    assert client.post("/search", json={"query": "vacaciones"}).json()["items"] == []

    deleted = client.delete("/documents/lgss").json()
    assert deleted["sections_deleted"] == 1
    assert client.get("/documents/lgss").status_code == 404


def test_list_documents_with_stats(client):
    _ingest(client, "Ley", LEY, topic="Pensiones")
    _ingest(client, "Estatuto", VACACIONES, topic="Laboral")

    listing = client.get("/documents", params={"topic": "pensiones"}).json()

    assert [d["title"] for d in listing["documents"]] == ["Ley"]
    assert listing["documents"][0]["section_count"] == 2
    assert listing["stats"]["documents"] == 2
    assert listing["stats"]["embedded_documents"] == 2


def test_article_lookup(client):
    _ingest(client, "Ley", LEY, id="lgss")

    sections = client.get("/articles/205").json()["sections"]

    assert [s["title"] for s in sections] == ["Artículo 205"]
    assert client.get("/articles/20").json()["sections"] == []


def test_reconcile_and_orphan_cleanup(client):
    _ingest(client, "Ley", LEY, id="lgss")
    store = client.app.state.store
    store.update_embedding("lgss", None, None)

    summary = client.post("/embeddings/reconcile", json={"mode": "missing", "delay_seconds": 0}).json()
    assert summary["succeeded"] == 1
    assert client.get("/documents/lgss").json()["has_embedding"]

    assert client.post("/embeddings/reconcile", json={"mode": "bogus"}).status_code == 422

    conn = sqlite3.connect(store.db_path)
    conn.execute("INSERT INTO sections (document_id, title, content, position) VALUES ('ghost', 'X', 'Y', 0)")
    conn.commit()
    conn.close()
    assert client.post("/sections/cleanup-orphans").json()["deleted"] == 1


def test_both_granularities_never_repeat_a_document(client):
    _ingest(client, "Ley General de la Seguridad Social", LEY, id="lgss")

    bundle = client.post("/search", json={"query": "jubilación anticipada", "granularity": "both"}).json()

    included = [item["unit_id"] for item in bundle["items"]]
    assert not ("lgss" in included and any(unit.startswith("lgss#") for unit in included))
    assert "duplicate" in {item["status"] for item in bundle["trace"]}


def test_search_loads_candidates_off_the_event_loop(client):
    _ingest(client, "Ley", LEY, id="lgss")
    store = client.app.state.store
    original_load = store.load_candidates
    threads = {}

    def recording_load(**kwargs):
        threads["store"] = threading.get_ident()
        return original_load(**kwargs)

    async def recording_search(query, candidates, options):
        threads["loop"] = threading.get_ident()
        return await original_search(query, candidates, options)

    engine = client.app.state.engine
    original_search = engine.search
    with patch.object(store, "load_candidates", side_effect=recording_load), \
            patch.object(engine, "search", side_effect=recording_search):
        response = client.post("/search", json={"query": "jubilación"})

    assert response.status_code == 200
    assert threads["store"] != threads["loop"]
