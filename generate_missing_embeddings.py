#!/usr/bin/env python3
"""
Embed stored documents that have no vector (or a stale/any vector).

Usage: python generate_missing_embeddings.py [missing|stale|all]
"""

import asyncio
import logging
import sys

from temario.document_store import DocumentStore, RECONCILE_MODES
from temario.ingestion import reconcile_embeddings
from temario.rag.embedder import EmbeddingService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main(mode: str) -> bool:
    store = DocumentStore()
    store.init_db()
    service = EmbeddingService.from_config()

    summary = await reconcile_embeddings(store, service, mode=mode)

    logger.info(f"Processed: {summary.processed}")
    logger.info(f"✅ Embedded: {summary.succeeded}")
    logger.info(f"⏭️  Skipped (embedding unavailable): {summary.skipped}")
    logger.info(f"❌ Failed: {summary.failed}")
    logger.info(f"Estimated tokens: ~{summary.estimated_tokens:,}")
    return summary.failed == 0


if __name__ == "__main__":
    mode = sys.argv[1] if len(sys.argv) > 1 else "missing"
    if len(sys.argv) > 2 or mode not in RECONCILE_MODES:
        print("Usage: python generate_missing_embeddings.py [missing|stale|all]")
        sys.exit(1)

    success = asyncio.run(main(mode))
    sys.exit(0 if success else 1)
