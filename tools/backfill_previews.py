#!/usr/bin/env python3
"""
Fill in the preview of stored emails that were saved without one.
"""

import argparse
import logging

from dotenv import load_dotenv

from inbox_manager.core.config import Config
from inbox_manager.managers import PostgreSQLManager
from inbox_manager.utils import setup_script_logging
from ingestion.email.email_manager import PostgreSQLEmailManager
from ingestion.email.normalizer import extract_preview


def main() -> None:
    """Backfill missing previews in batches."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Generate missing email previews")
    parser.add_argument("--batch-size", type=int, default=100)
    args = parser.parse_args()

    logger = setup_script_logging("backfill_previews", logging.INFO)
    config = Config()
    mgr = PostgreSQLManager.from_config(config)
    try:
        email_manager = PostgreSQLEmailManager(mgr)
        updated = email_manager.backfill_previews(
            lambda text: extract_preview(text, config.EMAIL_PREVIEW_LENGTH),
            batch_size=args.batch_size,
        )
        logger.info("Preview backfill complete: %d emails updated", updated)
    finally:
        mgr.close()


if __name__ == "__main__":
    main()
