"""
Conversation relay: ties deduplication, session resolution, command
routing, the conversation store and the AI backend together.

Per-session locks serialize store mutations. The lock is released while
the AI call is in flight: the prompt is read under the lock, the call runs
unlocked, and the lock is taken again to append and evict.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from .commands import ClearCommand, CommandRouter, HELP_TEXT, normalize_question, parse_command
from .context_store import ConversationStore
from .dedup import EventDeduplicator
from .errors import MalformedInboundPayload, UnsupportedMessageKind
from .lark_client import ReplySender
from .logging_config import logger
from .models import LarkEventHeader, LarkMessage, LarkMessageEvent, Turn
from .session_resolver import SessionIdentityResolver, derive_session_id
from .upstream import AIBackend, UpstreamAIError

UNSUPPORTED_MESSAGE = "Only text messages are supported."

SUPPORTED_CHAT_TYPES = ("p2p", "group")


class KeyedLock:
    """
    One asyncio.Lock per key, dropped once nobody holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class RelayOutcome:
    """
    Result of handling one piece of user text.

    kind is 'answer', 'command' or 'fallback'.
    """

    kind: str
    reply: str
    session_id: str
    turn: Optional[Turn] = None


def parse_text_content(content: str) -> str:
    """Decode the JSON body of a text message into its text."""
    try:
        body = json.loads(content)
    except ValueError as exc:
        raise MalformedInboundPayload("message.content is not valid JSON") from exc
    text = body.get("text") if isinstance(body, dict) else None
    if not isinstance(text, str):
        raise MalformedInboundPayload("message.content has no 'text' field")
    return text


def message_text(message: LarkMessage) -> str:
    if message.message_type != "text":
        raise UnsupportedMessageKind(message.message_type)
    return parse_text_content(message.content)


class ConversationRelay:
    def __init__(
        self,
        *,
        store: ConversationStore,
        deduplicator: EventDeduplicator,
        resolver: SessionIdentityResolver,
        backend: AIBackend,
        budget: int,
        mention_token: str = "@_user_1",
        system_prompt: Optional[str] = None,
        group_require_mention: bool = False,
    ) -> None:
        self.store = store
        self.deduplicator = deduplicator
        self.resolver = resolver
        self.backend = backend
        self.budget = budget
        self.mention_token = mention_token
        self.system_prompt = system_prompt or None
        self.group_require_mention = group_require_mention
        self.commands = CommandRouter(store, mention_token=mention_token)
        self.locks = KeyedLock()

    async def handle_text(self, raw_text: str, session_key: str) -> RelayOutcome:
        """
        Answer one message for a session key: run a command, or do the AI
        round trip and record the turn.
        """
        question = normalize_question(raw_text, self.mention_token)
        session_id = await self.resolver.resolve_key(session_key)
        logger.info("relay: question for session %s: %r", session_id, question)

        command = parse_command(question)
        if command is not None:
            async with self.locks.hold(session_id):
                result = await self.commands.execute(command, session_id)
            if isinstance(command, ClearCommand):
                if session_id != session_key:
                    # Turns recorded before the upstream id was bound.
                    async with self.locks.hold(session_key):
                        await self.store.clear(session_key)
                await self.resolver.forget(session_key)
            return RelayOutcome(kind="command", reply=result.reply, session_id=session_id)

        if not question:
            # Bare mention: nothing to ask.
            return RelayOutcome(kind="command", reply=HELP_TEXT, session_id=session_id)

        async with self.locks.hold(session_id):
            prompt = await self.store.build_prompt(
                session_id, question, system_prompt=self.system_prompt
            )

        try:
            ai_reply = await self.backend.ask(question, session_id, prompt)
        except UpstreamAIError as exc:
            logger.warning(
                "relay: %s backend failed for session %s: %s (status=%s)",
                self.backend.name,
                session_id,
                exc,
                exc.status_code,
            )
            return RelayOutcome(kind="fallback", reply=exc.user_message, session_id=session_id)

        target = await self.resolver.resolve_key(session_key, ai_reply.session_id)
        async with self.locks.hold(target):
            turn = await self.store.append(target, question, ai_reply.text)
            if turn is not None:
                await self.store.evict(target, self.budget)
        return RelayOutcome(kind="answer", reply=ai_reply.text, session_id=target, turn=turn)

    async def handle_message_event(
        self,
        header: LarkEventHeader,
        event: LarkMessageEvent,
        replier: ReplySender,
    ) -> Dict[str, object]:
        """
        Process an im.message.receive_v1 event and return the webhook body.
        """
        message = event.message
        sender_id = event.sender_key
        if not sender_id:
            raise MalformedInboundPayload(
                "event.sender.sender_id has neither user_id nor open_id"
            )
        raw_text: Optional[str]
        try:
            raw_text = message_text(message)
        except UnsupportedMessageKind as exc:
            logger.info("relay: %s in message %s", exc, message.message_id)
            raw_text = None

        if not await self.deduplicator.claim(header.event_id):
            logger.info("relay: skip repeat event %s", header.event_id)
            return {"code": 1, "message": "Duplicate event"}

        if message.chat_type not in SUPPORTED_CHAT_TYPES:
            logger.info("relay: ignoring chat type %s", message.chat_type)
            return {"code": 2}

        if raw_text is None:
            await replier.reply(message.message_id, UNSUPPORTED_MESSAGE)
            return {"code": 0}

        if (
            message.chat_type == "group"
            and self.group_require_mention
            and not self._mentions_bot(message)
        ):
            return {"code": 0}

        outcome = await self.handle_text(
            raw_text, derive_session_id(message.chat_id, sender_id)
        )
        await replier.reply(message.message_id, outcome.reply)
        await self.deduplicator.record_content(header.event_id, raw_text)
        return {"code": 0}

    def _mentions_bot(self, message: LarkMessage) -> bool:
        return any(mention.key == self.mention_token for mention in message.mentions)

    async def close(self) -> None:
        await self.store.close()


__all__ = [
    "UNSUPPORTED_MESSAGE",
    "KeyedLock",
    "RelayOutcome",
    "parse_text_content",
    "message_text",
    "ConversationRelay",
]
