"""
Run Chat Console - Talk to a bot from the terminal
"""
import sys
import logging
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dotenv import load_dotenv
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "WARNING"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)

print("=" * 60)
print("  🤖 Bot Chat Core - Console")
print("=" * 60)

from chatbot_core import ChatService, ChatbotError

BOT_ID = os.getenv("CHAT_BOT_ID", "console_bot")
USER_ID = os.getenv("CHAT_USER_ID", "console_user")

print("""
Commands:
  /help              - Show available commands
  /learn <content>   - Teach the bot something
  /forget            - Remove everything the bot learned
  :stats             - Show core statistics
  :clear             - Clear the conversation context
  :quit              - Exit

Anything else is sent to the bot as a message.
""")

try:
    service = ChatService()
except ChatbotError as e:
    print(f"❌ Could not start: {e}")
    sys.exit(1)

service.upsert_bot(BOT_ID, "Console Bot", os.getenv("CHAT_BOT_PERSONALITY"))
service.upsert_user(USER_ID, os.getenv("USER", "Console User"))

while True:
    try:
        text = input("you> ").strip()
    except (EOFError, KeyboardInterrupt):
        print()
        break

    if not text:
        continue
    if text == ":quit":
        break
    if text == ":stats":
        print(service.get_stats())
        continue
    if text == ":clear":
        cleared = service.clear_conversation(BOT_ID, USER_ID)
        print("🧹 Context cleared" if cleared else "No conversation yet")
        continue

    result = service.handle_message(text, BOT_ID, USER_ID)
    if not result["success"]:
        print(f"bot> ⚠️  {result.get('response') or result.get('error')}")
        continue

    if result.get("type") == "command":
        print(f"bot> {result['response']}")
        continue

    print(f"bot> {result['answer']}")
    sources = result.get("source_documents") or []
    if sources:
        print(f"     ({len(sources)} knowledge entries used)")
