"""
Slash commands handled locally, without calling the AI backend.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Type, Union

from .context_store import ConversationStore
from .logging_config import logger


HELP_TEXT = (
    "👋 I relay your messages to an AI assistant and remember recent turns.\n"
    "Commands:\n"
    "/help  - show this message\n"
    "/clear - forget the conversation history of this chat"
)
CLEAR_TEXT = "✅ Conversation history cleared."


@dataclass(frozen=True)
class HelpCommand:
    pass


@dataclass(frozen=True)
class ClearCommand:
    pass


@dataclass(frozen=True)
class UnknownCommand:
    text: str


Command = Union[HelpCommand, ClearCommand, UnknownCommand]


@dataclass(frozen=True)
class CommandResult:
    command: Command
    reply: str


def normalize_question(raw_text: str, mention_token: str = "@_user_1") -> str:
    """Strip the bot mention placeholder and surrounding whitespace."""
    if mention_token:
        raw_text = raw_text.replace(mention_token, "", 1)
    return raw_text.strip()


def parse_command(text: str) -> Optional[Command]:
    """
    Map normalized text to a command; None when the text is a question.
    Matching is exact and case-sensitive.
    """
    if not text.startswith("/"):
        return None
    if text == "/help":
        return HelpCommand()
    if text == "/clear":
        return ClearCommand()
    return UnknownCommand(text=text)


class CommandRouter:
    def __init__(self, store: ConversationStore, *, mention_token: str = "@_user_1") -> None:
        self._store = store
        self._mention_token = mention_token
        self._handlers: Dict[Type, Callable[[Command, str], Awaitable[str]]] = {
            HelpCommand: self._help,
            ClearCommand: self._clear,
            UnknownCommand: self._help,
        }

    async def route(self, raw_text: str, session_id: str) -> Optional[CommandResult]:
        command = parse_command(normalize_question(raw_text, self._mention_token))
        if command is None:
            return None
        return await self.execute(command, session_id)

    async def execute(self, command: Command, session_id: str) -> CommandResult:
        handler = self._handlers[type(command)]
        reply = await handler(command, session_id)
        logger.info("command: %s for session %s", type(command).__name__, session_id)
        return CommandResult(command=command, reply=reply)

    async def _help(self, command: Command, session_id: str) -> str:
        return HELP_TEXT

    async def _clear(self, command: Command, session_id: str) -> str:
        await self._store.clear(session_id)
        return CLEAR_TEXT


__all__ = [
    "HELP_TEXT",
    "CLEAR_TEXT",
    "HelpCommand",
    "ClearCommand",
    "UnknownCommand",
    "Command",
    "CommandResult",
    "normalize_question",
    "parse_command",
    "CommandRouter",
]
