"""
Command Interpreter Module

Handles slash commands addressed to a bot: `/<name> <argument text>`.

Commands come from one registry queried through a single lookup, backed by
two providers:
- BuiltinCommandProvider: static commands (help, learn, forget)
- CustomCommandProvider: bot-scoped rows in `bot_commands` (enabled only)

Built-ins are consulted first, so a custom command can never shadow one.
Unknown commands and bad arguments come back as unsuccessful results;
only infrastructure failures raise.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete as sql_delete, select

from chatbot_core.database import CommandModel, Database, utcnow
from chatbot_core.errors import ValidationError
from chatbot_core.knowledge import KnowledgeStore

logger = logging.getLogger(__name__)

COMMAND_PREFIX = "/"


def is_command(message: str) -> bool:
    """True for command-shaped input (leading slash)."""
    return bool(message) and message.startswith(COMMAND_PREFIX)


def parse_command(message: str) -> Tuple[str, str]:
    """
    Split "/name argument text" into (name, argument).

    The name ends at the first whitespace; the argument is the stripped rest.
    """
    body = message[len(COMMAND_PREFIX):] if is_command(message) else message
    parts = body.strip().split(None, 1)
    if not parts:
        return "", ""
    name = parts[0]
    argument = parts[1].strip() if len(parts) > 1 else ""
    return name, argument


@dataclass
class CommandResult:
    """Outcome of a command; `type` is always "command"."""

    response: str
    success: bool
    type: str = "command"

    def to_dict(self) -> Dict[str, object]:
        return {"type": self.type, "response": self.response, "success": self.success}


CommandHandler = Callable[[str, str, str], CommandResult]


@dataclass
class Command:
    """
    A command the interpreter can run.

    Attributes:
        name: Name without the leading slash
        description: One-line help text
        handler: Called as handler(bot_id, user_id, argument)
        builtin: True for static commands
    """

    name: str
    description: str
    handler: CommandHandler
    builtin: bool = False


class CommandProvider(ABC):
    """Source of commands for the registry."""

    @abstractmethod
    def get(self, name: str, bot_id: str) -> Optional[Command]:
        """Return the command called `name` for this bot, if any."""
        pass

    @abstractmethod
    def list(self, bot_id: str) -> List[Command]:
        """Return all commands available to this bot."""
        pass


class BuiltinCommandProvider(CommandProvider):
    """Static commands: help, learn, forget."""

    def __init__(self, knowledge_store: KnowledgeStore, help_handler: CommandHandler):
        self.knowledge_store = knowledge_store
        self._commands = {
            "help": Command("help", "Show available commands", help_handler, builtin=True),
            "learn": Command(
                "learn",
                "Add new knowledge to the bot (Usage: /learn <content>)",
                self._learn,
                builtin=True,
            ),
            "forget": Command(
                "forget", "Remove all learned knowledge", self._forget, builtin=True
            ),
        }

    def get(self, name: str, bot_id: str) -> Optional[Command]:
        return self._commands.get(name)

    def list(self, bot_id: str) -> List[Command]:
        return list(self._commands.values())

    def _learn(self, bot_id: str, user_id: str, argument: str) -> CommandResult:
        if not argument:
            return CommandResult("Please provide content to learn", success=False)

        self.knowledge_store.add_knowledge(
            bot_id, argument, {"source": "user_command", "user_id": user_id}
        )
        return CommandResult("I've learned this information!", success=True)

    def _forget(self, bot_id: str, user_id: str, argument: str) -> CommandResult:
        self.knowledge_store.delete_knowledge(bot_id)
        return CommandResult("I've forgotten all learned information.", success=True)


class CustomCommandProvider(CommandProvider):
    """Bot-scoped commands stored in `bot_commands`."""

    def __init__(self, database: Database):
        self.database = database

    def _to_command(self, row: CommandModel) -> Command:
        name = row.command
        response = row.response

        def handler(bot_id: str, user_id: str, argument: str) -> CommandResult:
            return CommandResult(response or f"Executing command: {name}", success=True)

        return Command(name, row.description or "", handler)

    def get(self, name: str, bot_id: str) -> Optional[Command]:
        with self.database.session_scope() as session:
            row = session.scalar(
                select(CommandModel).where(
                    CommandModel.bot_id == bot_id,
                    CommandModel.command == name,
                    CommandModel.enabled.is_(True),
                )
            )
            return self._to_command(row) if row is not None else None

    def list(self, bot_id: str) -> List[Command]:
        with self.database.session_scope() as session:
            rows = session.scalars(
                select(CommandModel)
                .where(CommandModel.bot_id == bot_id, CommandModel.enabled.is_(True))
                .order_by(CommandModel.command)
            ).all()
            return [self._to_command(r) for r in rows]


class CommandRegistry:
    """Ordered providers behind one lookup; earlier providers win."""

    def __init__(self, providers: List[CommandProvider]):
        self.providers = providers

    def lookup(self, name: str, bot_id: str) -> Optional[Command]:
        for provider in self.providers:
            command = provider.get(name, bot_id)
            if command is not None:
                return command
        return None

    def list_commands(self, bot_id: str) -> List[Command]:
        """Every available command, each name once, provider order kept."""
        seen = set()
        commands = []
        for provider in self.providers:
            for command in provider.list(bot_id):
                if command.name not in seen:
                    seen.add(command.name)
                    commands.append(command)
        return commands


class CommandInterpreter:
    """
    Executes slash commands for a bot.

    Example:
        interpreter = CommandInterpreter(database, knowledge_store)
        result = interpreter.execute("/learn The office opens at 9am", "bot_1", "user_1")
        print(result.response)
    """

    def __init__(self, database: Database, knowledge_store: KnowledgeStore):
        self.database = database
        self.knowledge_store = knowledge_store
        self.registry = CommandRegistry(
            [
                BuiltinCommandProvider(knowledge_store, self._help),
                CustomCommandProvider(database),
            ]
        )

    def execute(self, message: str, bot_id: str, user_id: str) -> CommandResult:
        """
        Run a command message.

        Args:
            message: Raw text starting with "/"
            bot_id: Bot the command is addressed to
            user_id: Sender

        Returns:
            CommandResult (success=False for unknown commands or bad arguments)
        """
        name, argument = parse_command(message)
        command = self.registry.lookup(name, bot_id) if name else None

        if command is None:
            logger.info(f"Unknown command '{name}' for bot {bot_id}")
            return CommandResult(
                f"Unknown command: {name}. Use /help to see available commands.",
                success=False,
            )

        logger.info(f"Executing command /{name} for bot {bot_id}")
        return command.handler(bot_id, user_id, argument)

    def _help(self, bot_id: str, user_id: str, argument: str) -> CommandResult:
        lines = [
            f"{COMMAND_PREFIX}{c.name}: {c.description}"
            for c in self.registry.list_commands(bot_id)
        ]
        return CommandResult("Available commands:\n" + "\n".join(lines), success=True)

    def add_custom_command(
        self,
        bot_id: str,
        command: str,
        description: str = "",
        response: Optional[str] = None,
        enabled: bool = True,
    ) -> None:
        """
        Create or replace a custom command for a bot.

        Raises:
            ValidationError: Empty name, whitespace in the name, or a built-in name
        """
        name = command[len(COMMAND_PREFIX):] if is_command(command) else command
        if not name or any(ch.isspace() for ch in name):
            raise ValidationError(f"Invalid command name: {command!r}")
        if self.registry.providers[0].get(name, bot_id) is not None:
            raise ValidationError(f"/{name} is a built-in command")

        with self.database.session_scope() as session:
            row = session.scalar(
                select(CommandModel).where(
                    CommandModel.bot_id == bot_id, CommandModel.command == name
                )
            )
            if row is None:
                row = CommandModel(bot_id=bot_id, command=name, created_at=utcnow())
                session.add(row)
            row.description = description
            row.response = response
            row.enabled = enabled

        logger.info(f"Saved custom command /{name} for bot {bot_id}")

    def set_command_enabled(self, bot_id: str, command: str, enabled: bool) -> bool:
        """Enable or disable a custom command; False if it does not exist."""
        name = command[len(COMMAND_PREFIX):] if is_command(command) else command
        with self.database.session_scope() as session:
            row = session.scalar(
                select(CommandModel).where(
                    CommandModel.bot_id == bot_id, CommandModel.command == name
                )
            )
            if row is None:
                return False
            row.enabled = enabled
        return True

    def list_custom_commands(self, bot_id: str, include_disabled: bool = False) -> List[Dict[str, object]]:
        stmt = select(CommandModel).where(CommandModel.bot_id == bot_id)
        if not include_disabled:
            stmt = stmt.where(CommandModel.enabled.is_(True))
        with self.database.session_scope() as session:
            rows = session.scalars(stmt.order_by(CommandModel.command)).all()
            return [
                {
                    "command": r.command,
                    "description": r.description,
                    "response": r.response,
                    "enabled": r.enabled,
                }
                for r in rows
            ]

    def delete_custom_commands(self, bot_id: str) -> int:
        with self.database.session_scope() as session:
            return session.execute(
                sql_delete(CommandModel).where(CommandModel.bot_id == bot_id)
            ).rowcount
