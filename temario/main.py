# Entry point for the FastAPI app
import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from temario.document_store import DocumentStore
from temario.exceptions import (
    DocumentIntegrityError,
    DocumentNotFoundError,
    EmptyDocumentError,
    TemarioError,
)
from temario.ingestion import ingest_document, reconcile_embeddings, reingest_document, run_blocking
from temario.models.document import Document
from temario.models.retrieval import RetrievalOptions
from temario.rag.embedder import EmbeddingService
from temario.rag.lexical import mentions_article
from temario.rag.retriever import RetrievalEngine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

router = APIRouter()

default_message = {"status": "ok", "service": "temario"}

_ERROR_STATUS = {
    EmptyDocumentError: status.HTTP_400_BAD_REQUEST,
    DocumentNotFoundError: status.HTTP_404_NOT_FOUND,
    DocumentIntegrityError: status.HTTP_409_CONFLICT,
}


class DocumentIn(BaseModel):
    title: str = Field(..., min_length=1)
    content: str
    topic: Optional[str] = None
    reference: Optional[str] = None
    id: Optional[str] = None


class DocumentUpdate(BaseModel):
    content: str
    title: Optional[str] = None
    topic: Optional[str] = None
    reference: Optional[str] = None


class SearchRequest(BaseModel):
    query: str
    topic: Optional[str] = None
    # Only search documents of `topic` instead of just boosting them
    restrict_to_topic: bool = False
    granularity: Literal["document", "section", "both"] = "document"
    max_total_chars: Optional[int] = None
    min_score: Optional[float] = None
    top_k: Optional[int] = None
    include_trace: bool = True


class ReconcileRequest(BaseModel):
    mode: Literal["missing", "stale", "all"] = "missing"
    batch_size: Optional[int] = Field(default=None, ge=1)
    delay_seconds: Optional[float] = Field(default=None, ge=0)


def _document_to_dict(document: Document, include_content: bool = True) -> Dict[str, Any]:
    data = {
        "id": document.id,
        "title": document.title,
        "topic": document.topic,
        "reference": document.reference,
        "active": document.active,
        "has_embedding": document.has_embedding,
        "embedding_model": document.embedding_model,
        "processed_at": document.processed_at,
        "created_at": document.created_at,
        "updated_at": document.updated_at,
        "char_count": len(document.content),
        "sections": [
            {"id": s.id, "title": s.title, "order": s.order, "char_count": len(s.content)}
            for s in document.sections
        ],
    }
    if include_content:
        data["content"] = document.content
    return data


@router.get("/")
def root():
    return default_message


@router.post("/documents", status_code=status.HTTP_201_CREATED)
async def create_document(payload: DocumentIn, request: Request):
    """Section, embed and store a new document."""
    state = request.app.state
    document = await ingest_document(
        state.store,
        state.embedding_service,
        title=payload.title,
        content=payload.content,
        topic=payload.topic,
        reference=payload.reference,
        document_id=payload.id,
    )
    return _document_to_dict(document, include_content=False)


@router.put("/documents/{document_id}")
async def update_document(document_id: str, payload: DocumentUpdate, request: Request):
    """Replace a document's content and sections, and re-embed it."""
    state = request.app.state
    document = await reingest_document(
        state.store,
        state.embedding_service,
        document_id,
        content=payload.content,
        title=payload.title,
        topic=payload.topic,
        reference=payload.reference,
    )
    return _document_to_dict(document, include_content=False)


@router.delete("/documents/{document_id}")
def delete_document(document_id: str, request: Request, soft: bool = False):
    store = request.app.state.store
    if soft:
        store.deactivate_document(document_id)
        return {"status": "deactivated", "id": document_id}
    sections_deleted = store.delete_document(document_id)
    return {"status": "deleted", "id": document_id, "sections_deleted": sections_deleted}


@router.get("/documents")
def list_documents(request: Request, topic: Optional[str] = None, include_inactive: bool = False):
    store = request.app.state.store
    return {
        "documents": store.list_documents(topic=topic, include_inactive=include_inactive),
        "stats": store.get_stats(),
    }


@router.get("/documents/{document_id}")
def get_document(document_id: str, request: Request):
    document = request.app.state.store.get_document(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)
    return _document_to_dict(document)


@router.get("/articles/{number}")
def find_article(number: str, request: Request):
    """Sections citing a specific article, e.g. /articles/205.1."""
    store = request.app.state.store
    sections = [
        s for s in store.find_sections_mentioning(number, limit=200)
        if s.title == f"Artículo {number}" or mentions_article(s.content, number)
    ]
    return {
        "article": number,
        "sections": [
            {"document_id": s.document_id, "title": s.title, "order": s.order, "content": s.content}
            for s in sections
        ],
    }


@router.post("/search")
async def search(payload: SearchRequest, request: Request):
    """Ranked, budgeted context for a query."""
    state = request.app.state
    try:
        options = RetrievalOptions.from_config(
            max_total_chars=payload.max_total_chars,
            min_score=payload.min_score,
            top_k=payload.top_k,
            topic=payload.topic,
        )
    except ValueError as e:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(e)})

    candidates = await run_blocking(
        state.store.load_candidates,
        topic=payload.topic if payload.restrict_to_topic else None,
        granularity=payload.granularity,
    )
    bundle = await state.engine.search(payload.query, candidates, options)
    return bundle.to_dict(include_trace=payload.include_trace)


@router.post("/embeddings/reconcile")
async def reconcile(request: Request, payload: Optional[ReconcileRequest] = None):
    """Embed documents missing a vector, carrying a stale model tag, or all."""
    payload = payload or ReconcileRequest()
    state = request.app.state
    summary = await reconcile_embeddings(
        state.store,
        state.embedding_service,
        mode=payload.mode,
        batch_size=payload.batch_size,
        delay_seconds=payload.delay_seconds,
    )
    return summary.to_dict()


@router.post("/sections/cleanup-orphans")
def cleanup_orphan_sections(request: Request):
    deleted = request.app.state.store.delete_orphan_sections()
    return {"status": "ok", "deleted": deleted}


async def _temario_error_handler(request: Request, exc: TemarioError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    logger.warning(f"[API] {request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(
    store: Optional[DocumentStore] = None,
    embedding_service: Optional[EmbeddingService] = None,
) -> FastAPI:
    """Build the app; store and embedding service default to config-driven instances."""
    app = FastAPI(title="temario")
    app.include_router(router)
    app.add_exception_handler(TemarioError, _temario_error_handler)

    # Initialize document store and embedding service on startup
    @app.on_event("startup")
    def startup_event():
        app.state.store = store or DocumentStore()
        app.state.store.init_db()
        app.state.embedding_service = embedding_service or EmbeddingService.from_config()
        app.state.engine = RetrievalEngine(app.state.embedding_service)
        logger.info(
            f"[API] Ready: store={app.state.store.db_path}, "
            f"model={app.state.embedding_service.model}"
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("temario.main:app", host="0.0.0.0", port=8000)
