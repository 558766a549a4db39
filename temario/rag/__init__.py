"""
RAG (Retrieval Augmented Generation) module for the temario corpus.

Turns ingested legal/reference documents into sections and vectors, and
assembles a bounded, attributed context for answer generation.

Components:
    - chunker: Splits raw text into titled sections and overlapping windows
    - embedder: Embedding Service over the OpenAI embeddings API
    - lexical: Term-overlap scoring used when no usable vector exists
    - retriever: RetrievalEngine, the single query-time entry point
"""
