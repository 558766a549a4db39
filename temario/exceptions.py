"""Exceptions raised by the document store and the ingestion pipeline.

Query-time problems (provider down, malformed vectors, nothing fits the budget)
are never raised; they degrade the Context Bundle instead.
"""


class TemarioError(Exception):
    """Base class for all corpus errors."""
    pass


class EmptyDocumentError(TemarioError):
    """Raised when ingested text produces zero sections."""
    pass


class DocumentNotFoundError(TemarioError):
    """Raised when an operation targets a document id that does not exist."""

    def __init__(self, document_id: str):
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class DocumentIntegrityError(TemarioError):
    """Raised when a write would break the Document/Section relationship."""
    pass
