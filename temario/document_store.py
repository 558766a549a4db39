"""
SQLite persistence for documents and their sections.

Sections belong to exactly one document and are removed with it
(ON DELETE CASCADE, foreign keys enabled on every connection). Re-ingestion
replaces a document's content and sections inside one transaction, so an
interrupted replace leaves the previous state intact.

Embeddings are stored per document as a JSON array string next to the model
that produced them.
"""

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence

from temario import config
from temario.exceptions import DocumentIntegrityError, DocumentNotFoundError
from temario.models.document import Document, Section, SectionDraft
from temario.models.retrieval import RetrievalCandidate

logger = logging.getLogger(__name__)

GRANULARITIES = ("document", "section", "both")
RECONCILE_MODES = ("missing", "stale", "all")

_DOCUMENT_COLUMNS = (
    "id, title, content, topic, reference, embedding, embedding_model, "
    "processed_at, active, created_at, updated_at"
)


class DocumentStore:
    """Document/Section repository over a single SQLite file."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DOCUMENT_DB_PATH

    @contextmanager
    def get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self):
        """Create tables and indexes if they do not exist."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self.get_conn() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                topic TEXT,
                reference TEXT,
                embedding TEXT,
                embedding_model TEXT,
                processed_at TIMESTAMP,
                active BOOLEAN DEFAULT 1 NOT NULL,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS sections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                position INTEGER NOT NULL,
                UNIQUE (document_id, position)
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_topic ON documents(topic)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sections_document ON sections(document_id)")
            conn.commit()
        logger.info(f"[STORE] Database ready at {self.db_path}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_document(
        self,
        title: str,
        content: str,
        sections: Sequence[SectionDraft],
        topic: Optional[str] = None,
        reference: Optional[str] = None,
        embedding: Optional[str] = None,
        embedding_model: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> Document:
        """Insert a document and its sections atomically.

        Raises:
            DocumentIntegrityError: If the id already exists or sections collide.
        """
        document_id = document_id or uuid.uuid4().hex
        try:
            with self.get_conn() as conn:
                with conn:
                    conn.execute(f"""
                        INSERT INTO documents ({_DOCUMENT_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP, 1,
                                CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                    """, (document_id, title, content, topic, reference,
                          embedding, embedding_model if embedding else None))
                    self._insert_sections(conn, document_id, sections)
        except sqlite3.IntegrityError as e:
            raise DocumentIntegrityError(
                f"Cannot create document {document_id}: {e}"
            ) from e

        logger.info(
            f"[STORE] Created document {document_id} '{title}' with {len(sections)} sections"
        )
        return self.get_document(document_id)

    def replace_document(
        self,
        document_id: str,
        title: str,
        content: str,
        sections: Sequence[SectionDraft],
        topic: Optional[str] = None,
        reference: Optional[str] = None,
        embedding: Optional[str] = None,
        embedding_model: Optional[str] = None,
    ) -> Document:
        """Replace content, metadata, embedding and all sections in one transaction.

        Raises:
            DocumentNotFoundError: If the document does not exist.
            DocumentIntegrityError: If the new sections collide.
        """
        try:
            with self.get_conn() as conn:
                with conn:
                    cur = conn.execute("""
                        UPDATE documents SET
                            title = ?, content = ?, topic = ?, reference = ?,
                            embedding = ?, embedding_model = ?,
                            processed_at = CURRENT_TIMESTAMP,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE id = ?
                    """, (title, content, topic, reference, embedding,
                          embedding_model if embedding else None, document_id))
                    if cur.rowcount == 0:
                        raise DocumentNotFoundError(document_id)
                    deleted = conn.execute(
                        "DELETE FROM sections WHERE document_id = ?", (document_id,)
                    ).rowcount
                    self._insert_sections(conn, document_id, sections)
        except sqlite3.IntegrityError as e:
            raise DocumentIntegrityError(
                f"Cannot replace document {document_id}: {e}"
            ) from e

        logger.info(
            f"[STORE] Replaced document {document_id}: {deleted} old sections, "
            f"{len(sections)} new"
        )
        return self.get_document(document_id)

    def _insert_sections(self, conn, document_id: str, sections: Sequence[SectionDraft]):
        conn.executemany(
            "INSERT INTO sections (document_id, title, content, position) VALUES (?, ?, ?, ?)",
            [(document_id, s.title, s.content, s.order) for s in sections],
        )

    def update_embedding(
        self,
        document_id: str,
        embedding: Optional[str],
        embedding_model: Optional[str],
    ):
        """Store (or clear, with None) a document's serialized vector."""
        with self.get_conn() as conn:
            with conn:
                cur = conn.execute("""
                    UPDATE documents SET
                        embedding = ?, embedding_model = ?,
                        processed_at = CURRENT_TIMESTAMP,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                """, (embedding, embedding_model if embedding else None, document_id))
                if cur.rowcount == 0:
                    raise DocumentNotFoundError(document_id)

    def deactivate_document(self, document_id: str):
        """Soft delete: the document stays stored but is never a candidate again."""
        self._set_active(document_id, False)
        logger.info(f"[STORE] Deactivated document {document_id}")

    def activate_document(self, document_id: str):
        self._set_active(document_id, True)

    def _set_active(self, document_id: str, active: bool):
        with self.get_conn() as conn:
            with conn:
                cur = conn.execute(
                    "UPDATE documents SET active = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (1 if active else 0, document_id),
                )
                if cur.rowcount == 0:
                    raise DocumentNotFoundError(document_id)

    def delete_document(self, document_id: str) -> int:
        """Hard delete a document; its sections go with it.

        Returns:
            Number of sections removed.
        """
        with self.get_conn() as conn:
            with conn:
                section_count = conn.execute(
                    "SELECT COUNT(*) FROM sections WHERE document_id = ?", (document_id,)
                ).fetchone()[0]
                cur = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
                if cur.rowcount == 0:
                    raise DocumentNotFoundError(document_id)

        logger.info(f"[STORE] Deleted document {document_id} and {section_count} sections")
        return section_count

    def delete_orphan_sections(self) -> int:
        """Remove sections whose document no longer exists.

        Only databases written without foreign key enforcement can hold them.
        """
        with self.get_conn() as conn:
            with conn:
                deleted = conn.execute("""
                    DELETE FROM sections
                    WHERE document_id NOT IN (SELECT id FROM documents)
                """).rowcount
        if deleted:
            logger.warning(f"[STORE] Deleted {deleted} orphan sections")
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_document(self, document_id: str, include_sections: bool = True) -> Optional[Document]:
        with self.get_conn() as conn:
            row = conn.execute(
                f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            if row is None:
                return None
            document = _row_to_document(row)
            if include_sections:
                document.sections = self._fetch_sections(conn, document_id)
            return document

    def get_sections(self, document_id: str) -> List[Section]:
        with self.get_conn() as conn:
            return self._fetch_sections(conn, document_id)

    def _fetch_sections(self, conn, document_id: str) -> List[Section]:
        rows = conn.execute("""
            SELECT id, document_id, title, content, position FROM sections
            WHERE document_id = ? ORDER BY position
        """, (document_id,)).fetchall()
        return [_row_to_section(row) for row in rows]

    def list_documents(
        self,
        topic: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[Dict[str, Any]]:
        """Document summaries (no content) with section counts, in insertion order."""
        clauses, params = [], []
        if not include_inactive:
            clauses.append("d.active = 1")
        if topic:
            clauses.append("LOWER(d.topic) = LOWER(?)")
            params.append(topic)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self.get_conn() as conn:
            rows = conn.execute(f"""
                SELECT d.id, d.title, d.topic, d.reference, d.embedding_model,
                       d.embedding IS NOT NULL AND d.embedding != '' AS has_embedding,
                       d.active, d.processed_at, d.created_at, d.updated_at,
                       LENGTH(d.content) AS char_count,
                       (SELECT COUNT(*) FROM sections s WHERE s.document_id = d.id) AS section_count
                FROM documents d
                {where}
                ORDER BY d.rowid
            """, params).fetchall()

        summaries = []
        for row in rows:
            summary = dict(row)
            summary["has_embedding"] = bool(summary["has_embedding"])
            summary["active"] = bool(summary["active"])
            summaries.append(summary)
        return summaries

    def documents_needing_embedding(self, mode: str = "missing", model: Optional[str] = None) -> List[Document]:
        """Active documents to (re-)embed.

        Args:
            mode: "missing" (no vector), "stale" (vector tagged with another
                model than `model`) or "all".
            model: Current embedding model, required for "stale".
        """
        if mode not in RECONCILE_MODES:
            raise ValueError(f"Unknown reconcile mode: {mode}")

        query = f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE active = 1"
        params = []
        if mode == "missing":
            query += " AND (embedding IS NULL OR embedding = '')"
        elif mode == "stale":
            if not model:
                raise ValueError("model is required for stale mode")
            query += (
                " AND embedding IS NOT NULL AND embedding != ''"
                " AND embedding_model IS NOT NULL AND embedding_model != ?"
            )
            params.append(model)
        query += " ORDER BY rowid"

        with self.get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_document(row) for row in rows]

    def load_candidates(
        self,
        topic: Optional[str] = None,
        granularity: str = "document",
    ) -> List[RetrievalCandidate]:
        """Retrieval candidates from active documents.

        Args:
            topic: Only documents with this topic when given.
            granularity: "document" (whole documents with their vectors),
                "section" (sections, scored lexically) or "both".
        """
        if granularity not in GRANULARITIES:
            raise ValueError(f"Unknown granularity: {granularity}")

        where = "WHERE d.active = 1"
        params = []
        if topic:
            where += " AND LOWER(d.topic) = LOWER(?)"
            params.append(topic)

        candidates = []
        with self.get_conn() as conn:
            if granularity in ("document", "both"):
                rows = conn.execute(f"""
                    SELECT d.id, d.title, d.content, d.topic, d.embedding, d.embedding_model
                    FROM documents d {where} ORDER BY d.rowid
                """, params).fetchall()
                for row in rows:
                    candidates.append(RetrievalCandidate(
                        unit_id=row["id"],
                        document_id=row["id"],
                        title=row["title"],
                        text=row["content"],
                        topic=row["topic"],
                        embedding=row["embedding"],
                        embedding_model=row["embedding_model"],
                    ))

            if granularity in ("section", "both"):
                rows = conn.execute(f"""
                    SELECT d.id AS document_id, d.title AS document_title, d.topic,
                           s.title, s.content, s.position
                    FROM sections s JOIN documents d ON d.id = s.document_id
                    {where} ORDER BY d.rowid, s.position
                """, params).fetchall()
                for row in rows:
                    candidates.append(RetrievalCandidate(
                        unit_id=f"{row['document_id']}#{row['position']}",
                        document_id=row["document_id"],
                        title=f"{row['document_title']} - {row['title']}",
                        text=row["content"],
                        topic=row["topic"],
                    ))

        logger.debug(
            f"[STORE] Loaded {len(candidates)} candidates "
            f"(granularity={granularity}, topic={topic})"
        )
        return candidates

    def find_sections_mentioning(self, term: str, limit: int = 20) -> List[Section]:
        """Sections of active documents whose title or content contains `term`."""
        if not term or not term.strip():
            return []
        pattern = f"%{term.strip()}%"
        with self.get_conn() as conn:
            rows = conn.execute("""
                SELECT s.id, s.document_id, s.title, s.content, s.position
                FROM sections s JOIN documents d ON d.id = s.document_id
                WHERE d.active = 1 AND (s.title LIKE ? OR s.content LIKE ?)
                ORDER BY d.rowid, s.position
                LIMIT ?
            """, (pattern, pattern, limit)).fetchall()
        return [_row_to_section(row) for row in rows]

    def get_stats(self) -> Dict[str, Any]:
        with self.get_conn() as conn:
            totals = conn.execute("""
                SELECT COUNT(*) AS documents,
                       COALESCE(SUM(active), 0) AS active_documents,
                       COALESCE(SUM(embedding IS NOT NULL AND embedding != ''), 0) AS embedded_documents,
                       COALESCE(SUM(LENGTH(content)), 0) AS total_chars
                FROM documents
            """).fetchone()
            section_count = conn.execute("SELECT COUNT(*) FROM sections").fetchone()[0]
            models = conn.execute("""
                SELECT embedding_model, COUNT(*) AS n FROM documents
                WHERE embedding_model IS NOT NULL GROUP BY embedding_model
            """).fetchall()
            topics = conn.execute("""
                SELECT COALESCE(topic, '') AS topic, COUNT(*) AS n FROM documents
                WHERE active = 1 GROUP BY COALESCE(topic, '')
            """).fetchall()

        stats = dict(totals)
        stats["sections"] = section_count
        stats["embedding_models"] = {row["embedding_model"]: row["n"] for row in models}
        stats["topics"] = {row["topic"]: row["n"] for row in topics}
        return stats


def _row_to_document(row) -> Document:
    return Document(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        topic=row["topic"],
        reference=row["reference"],
        embedding=row["embedding"],
        embedding_model=row["embedding_model"],
        processed_at=row["processed_at"],
        active=bool(row["active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_section(row) -> Section:
    return Section(
        id=row["id"],
        document_id=row["document_id"],
        title=row["title"],
        content=row["content"],
        order=row["position"],
    )
