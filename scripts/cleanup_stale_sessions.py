#!/usr/bin/env python3
"""
Reset stale runtime sessions left behind by offline or silent devices
"""

import argparse
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import structlog

from hvac_runtime.core.logging import configure_logging
from hvac_runtime.database.connection import SessionLocal, init_database
from hvac_runtime.store.cleanup import cleanup_stale_sessions
from hvac_runtime.store.runtime_store import RuntimeStore

logger = structlog.get_logger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Reset stale runtime sessions")
    parser.add_argument("--dry-run", action="store_true", help="Report stale sessions without resetting them")
    args = parser.parse_args()

    configure_logging()
    init_database()
    try:
        cleanup_stale_sessions(RuntimeStore(SessionLocal), dry_run=args.dry_run)
    except Exception as e:
        logger.error("Cleanup failed", error=str(e))
        raise


if __name__ == "__main__":
    main()
