#!/usr/bin/env python3
"""
Delete sections whose document no longer exists
"""

import logging
import sys

from temario.document_store import DocumentStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def clean_orphan_sections() -> int:
    store = DocumentStore()
    store.init_db()
    deleted = store.delete_orphan_sections()
    if deleted:
        logger.info(f"🧹 Removed {deleted} orphan sections")
    else:
        logger.info("✅ No orphan sections found")
    return deleted


if __name__ == "__main__":
    clean_orphan_sections()
    sys.exit(0)
