#!/usr/bin/env python3
"""
Message Embedding Backfill Script

Embeds every stored message that has no vector yet, oldest first.
Safe to interrupt and re-run: already embedded messages are skipped.

Usage:
    python scripts/backfill_embeddings.py
    python scripts/backfill_embeddings.py --batch-size 50 --concurrency 3 --max-batches 10
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv()

from config import get_settings
from chatbot_core.backfill import EmbeddingBackfill
from chatbot_core.database import get_database
from chatbot_core.embeddings import EmbeddingService
from chatbot_core.errors import ChatbotError
from chatbot_core.vector_store import VectorIndex

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Backfill message embeddings")
    parser.add_argument("--batch-size", type=int, default=settings.backfill.batch_size)
    parser.add_argument("--concurrency", type=int, default=settings.backfill.concurrency)
    parser.add_argument("--delay", type=float, default=settings.backfill.delay_seconds,
                        help="Seconds to wait between embedding chunks")
    parser.add_argument("--max-batches", type=int, default=None)
    return parser.parse_args()


def main():
    args = parse_args()

    print("\n" + "=" * 60)
    print("  🧮 Message Embedding Backfill")
    print("=" * 60 + "\n")

    try:
        database = get_database()
        vector_index = VectorIndex(database, EmbeddingService())
    except ChatbotError as e:
        logger.error(f"Setup failed: {e}")
        sys.exit(1)

    backfill = EmbeddingBackfill(
        database,
        vector_index,
        batch_size=args.batch_size,
        concurrency=args.concurrency,
        delay_seconds=args.delay,
    )

    try:
        stats = backfill.run(max_batches=args.max_batches)
    except KeyboardInterrupt:
        print("\n⏹️  Interrupted. Re-run to continue where it stopped.")
        sys.exit(130)
    except ChatbotError as e:
        logger.error(f"Backfill failed: {e}")
        sys.exit(1)

    print(f"""
✅ Backfill finished
   Messages pending at start: {stats.total_messages}
   Embedded:                  {stats.embedded}
   Failed:                    {stats.failed}
   Batches:                   {stats.batches}
   Time:                      {stats.elapsed_seconds:.1f}s
""")


if __name__ == "__main__":
    main()
