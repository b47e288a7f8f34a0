#!/usr/bin/env python3
"""
Database Setup Script

Prepares the relational store for the bot chat core.
It will:
1. Connect to DATABASE_URL (SQLite by default)
2. Create any missing tables
3. Record or verify the vector index dimension
4. Report row counts

Usage:
    python scripts/setup_database.py
    python scripts/setup_database.py --reset
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

from sqlalchemy import func, select

from config import get_settings
from chatbot_core.database import (
    BotModel,
    ConversationModel,
    Database,
    EmbeddingModel,
    FeedbackModel,
    KnowledgeModel,
    MessageModel,
)
from chatbot_core.errors import ChatbotError
from chatbot_core.vector_store import VectorIndex

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def print_banner():
    """Print setup banner."""
    print("\n" + "=" * 60)
    print("  🗄️  Database Setup")
    print("  Bot Chat Core")
    print("=" * 60 + "\n")


def print_counts(database: Database):
    """Print the number of rows in the main tables."""
    tables = [
        ("messages", MessageModel),
        ("bots", BotModel),
        ("bot_knowledge", KnowledgeModel),
        ("message_embeddings", EmbeddingModel),
        ("bot_conversations", ConversationModel),
        ("bot_feedback", FeedbackModel),
    ]
    print("\n📊 Table sizes")
    print("-" * 40)
    with database.session_scope() as session:
        for name, model in tables:
            count = session.scalar(select(func.count()).select_from(model))
            print(f"   {name:<20} {count}")


def main():
    """Main setup flow."""
    parser = argparse.ArgumentParser(description="Set up the bot chat core database")
    parser.add_argument("--reset", action="store_true", help="Drop all tables first")
    args = parser.parse_args()

    print_banner()
    settings = get_settings()

    print(f"🔌 Connecting to {settings.database.url}")
    try:
        database = Database()
    except ChatbotError as e:
        print(f"❌ Could not open the database: {e}")
        sys.exit(1)
    print("✅ Connected, tables created")

    if args.reset:
        response = input("Drop ALL tables and data? [y/N]: ").strip().lower()
        if response == "y":
            database.drop_tables()
            database.create_tables()
            print("✅ Tables recreated")
        else:
            print("Reset skipped")

    dimension = settings.embedding.dimension
    print(f"\n🔍 Checking vector index (model {settings.embedding.openai_model}, dimension {dimension})")
    try:
        VectorIndex(database, dimension=dimension)
    except ChatbotError as e:
        print(f"❌ {e}")
        print("   The stored vectors use a different model. Reset the database or")
        print("   set EMBEDDING_MODEL_NAME / EMBEDDING_DIMENSIONS to match.")
        sys.exit(1)
    print("✅ Vector index dimension verified")

    print_counts(database)

    print("\n" + "=" * 60)
    print("  ✅ Database Setup Complete!")
    print("=" * 60)
    print("""
Next Steps:
  1. Set OPENAI_API_KEY (and LLM_PROVIDER) in .env
  2. Embed existing messages: python scripts/backfill_embeddings.py
  3. Try the bot: python run_chat.py
""")


if __name__ == "__main__":
    main()
