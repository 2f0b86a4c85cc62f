from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from relay.context_store import InMemoryConversationStore
from relay.dedup import InMemoryEventDeduplicator
from relay.models import PromptMessage
from relay.relay_service import ConversationRelay
from relay.session_resolver import InMemorySessionAliasStore, SessionIdentityResolver
from relay.upstream import AIReply, UpstreamAIError


class StepClock:
    """Monotonic fake clock advancing one second per call."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class FakeBackend:
    """
    Scripted AI backend. Each call pops the next scripted reply; an
    UpstreamAIError instance in the script is raised instead.
    """

    name = "fake"

    def __init__(self, *replies: Any) -> None:
        self._script: List[Any] = list(replies)
        self.calls: List[Tuple[str, str, List[PromptMessage]]] = []

    async def ask(self, question: str, session_id: str, prompt: List[PromptMessage]) -> AIReply:
        self.calls.append((question, session_id, list(prompt)))
        item = self._script.pop(0) if self._script else AIReply(text=f"echo: {question}")
        if isinstance(item, UpstreamAIError):
            raise item
        if isinstance(item, str):
            return AIReply(text=item)
        return item


class RecordingReplier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []

    async def reply(self, message_id: str, text: str) -> bool:
        self.sent.append((message_id, text))
        return True


def make_relay(
    backend: FakeBackend,
    *,
    budget: int = 1024,
    store: Optional[InMemoryConversationStore] = None,
    **kwargs: Any,
) -> ConversationRelay:
    return ConversationRelay(
        store=store or InMemoryConversationStore(clock=StepClock()),
        deduplicator=InMemoryEventDeduplicator(),
        resolver=SessionIdentityResolver(InMemorySessionAliasStore()),
        backend=backend,
        budget=budget,
        **kwargs,
    )


def message_event(
    *,
    event_id: str = "evt-1",
    text: Optional[str] = "hello",
    chat_id: str = "c1",
    user_id: str = "u1",
    chat_type: str = "p2p",
    message_type: str = "text",
    message_id: str = "om_1",
    event_type: str = "im.message.receive_v1",
    token: Optional[str] = None,
    mentions: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Build a v2 im.message.receive_v1 callback body."""
    content = json.dumps({"text": text}) if message_type == "text" else json.dumps({"image_key": "img_1"})
    header: Dict[str, Any] = {"event_id": event_id, "event_type": event_type}
    if token is not None:
        header["token"] = token
    return {
        "schema": "2.0",
        "header": header,
        "event": {
            "sender": {"sender_id": {"user_id": user_id, "open_id": f"ou_{user_id}"}},
            "message": {
                "message_id": message_id,
                "chat_id": chat_id,
                "chat_type": chat_type,
                "message_type": message_type,
                "content": content,
                "mentions": mentions or [],
            },
        },
    }


class FakeRedis:
    """
    Minimal async Redis replacement used for tests.
    Supports the subset of commands used by the redis backends.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}

    async def get(self, key: str):
        value = self._data.get(key)
        return value if isinstance(value, str) else None

    async def set(
        self,
        key: str,
        value: str,
        ex: int | None = None,
        nx: bool = False,
        xx: bool = False,
        keepttl: bool = False,
    ):
        if nx and key in self._data:
            return None
        if xx and key not in self._data:
            return None
        self._data[key] = value
        return True

    async def exists(self, key: str) -> int:
        return 1 if key in self._data else 0

    async def delete(self, key: str) -> int:
        return 1 if self._data.pop(key, None) is not None else 0

    async def rpush(self, key: str, value: str) -> int:
        lst = self._data.setdefault(key, [])
        lst.append(value)
        return len(lst)

    async def lrange(self, key: str, start: int, end: int):
        lst = self._data.get(key, [])
        if not isinstance(lst, list):
            return []
        slice_end = None if end == -1 else end + 1
        return lst[start:slice_end]

    async def ltrim(self, key: str, start: int, end: int):
        lst = self._data.get(key)
        if not isinstance(lst, list):
            return True
        slice_end = None if end == -1 else end + 1
        trimmed = lst[start:slice_end]
        if trimmed:
            self._data[key] = trimmed
        else:
            self._data.pop(key, None)
        return True
