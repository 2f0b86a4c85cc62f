"""
Session identity resolution.

A session key is derived from (chat_id, sender_id) by direct
concatenation. When the AI backend reports its own session id for a
conversation, that id is bound to the derived key and used for every
later turn, so local history stays aligned with the backend's own memory.
"""

from __future__ import annotations

from typing import Dict, Optional, Protocol, runtime_checkable

from .logging_config import logger


def derive_session_id(chat_id: str, sender_id: str) -> str:
    # No delimiter: matches keys already persisted by earlier deployments.
    return f"{chat_id}{sender_id}"


@runtime_checkable
class SessionAliasStore(Protocol):
    async def get_alias(self, session_key: str) -> Optional[str]:
        ...

    async def set_alias(self, session_key: str, session_id: str) -> None:
        ...

    async def delete_alias(self, session_key: str) -> None:
        ...


class InMemorySessionAliasStore:
    def __init__(self) -> None:
        self._aliases: Dict[str, str] = {}

    async def get_alias(self, session_key: str) -> Optional[str]:
        return self._aliases.get(session_key)

    async def set_alias(self, session_key: str, session_id: str) -> None:
        self._aliases[session_key] = session_id

    async def delete_alias(self, session_key: str) -> None:
        self._aliases.pop(session_key, None)


class SessionIdentityResolver:
    def __init__(self, aliases: SessionAliasStore) -> None:
        self._aliases = aliases

    async def resolve(
        self,
        chat_id: str,
        sender_id: str,
        ai_session_id: Optional[str] = None,
    ) -> str:
        return await self.resolve_key(derive_session_id(chat_id, sender_id), ai_session_id)

    async def resolve_key(
        self, session_key: str, ai_session_id: Optional[str] = None
    ) -> str:
        """
        Resolve a raw session key. An AI-reported id takes precedence and
        is remembered for the key.
        """
        if ai_session_id:
            if ai_session_id != session_key:
                current = await self._aliases.get_alias(session_key)
                if current != ai_session_id:
                    logger.info(
                        "session: binding key %s to upstream session %s",
                        session_key,
                        ai_session_id,
                    )
                    await self._aliases.set_alias(session_key, ai_session_id)
            return ai_session_id
        bound = await self._aliases.get_alias(session_key)
        return bound or session_key

    async def forget(self, session_key: str) -> None:
        """Drop any upstream binding so the next turn starts a fresh session."""
        await self._aliases.delete_alias(session_key)


__all__ = [
    "derive_session_id",
    "SessionAliasStore",
    "InMemorySessionAliasStore",
    "SessionIdentityResolver",
]
