"""
SQLAlchemy-backed conversation store, event deduplicator and session
aliases. Blocking ORM calls run in a worker thread.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, TypeVar

import anyio
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from relay.context_store import ConversationStore
from relay.errors import StoreUnavailable
from relay.models import Turn
from relay.models.records import EventRecord, MessageRecord, SessionAliasRecord

T = TypeVar("T")


@contextmanager
def _session_scope(factory: sessionmaker[Session], operation: str) -> Iterator[Session]:
    db = factory()
    try:
        yield db
    except IntegrityError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable("sql", f"{operation} failed: {exc}") from exc
    finally:
        db.close()


class _SqlBackend:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    async def _run(self, fn: Callable[[], T]) -> T:
        return await anyio.to_thread.run_sync(fn)


class SqlConversationStore(_SqlBackend, ConversationStore):
    backend_name = "sql"

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        _SqlBackend.__init__(self, session_factory)
        ConversationStore.__init__(self, clock=clock)

    async def list_turns(self, session_id: str) -> List[Turn]:
        def _load() -> List[Turn]:
            with _session_scope(self._session_factory, "load turns") as db:
                rows = db.scalars(
                    select(MessageRecord)
                    .where(MessageRecord.session_id == session_id)
                    .order_by(MessageRecord.created_at, MessageRecord.id)
                ).all()
                return [
                    Turn(
                        session_id=row.session_id,
                        question=row.question,
                        answer=row.answer,
                        size_bytes=row.size_bytes,
                        created_at=row.created_at,
                    )
                    for row in rows
                ]

        return await self._run(_load)

    async def _insert(self, turn: Turn) -> None:
        def _save() -> None:
            with _session_scope(self._session_factory, "insert turn") as db:
                db.add(MessageRecord(**turn.model_dump()))
                db.commit()

        await self._run(_save)

    async def _delete_oldest(self, session_id: str, count: int) -> None:
        def _delete() -> None:
            with _session_scope(self._session_factory, "evict turns") as db:
                ids = db.scalars(
                    select(MessageRecord.id)
                    .where(MessageRecord.session_id == session_id)
                    .order_by(MessageRecord.created_at, MessageRecord.id)
                    .limit(count)
                ).all()
                if ids:
                    db.execute(delete(MessageRecord).where(MessageRecord.id.in_(ids)))
                    db.commit()

        await self._run(_delete)

    async def clear(self, session_id: str) -> None:
        def _clear() -> None:
            with _session_scope(self._session_factory, "clear session") as db:
                db.execute(delete(MessageRecord).where(MessageRecord.session_id == session_id))
                db.commit()

        await self._run(_clear)

    async def close(self) -> None:
        engine = self._session_factory.kw.get("bind")
        if engine is not None:
            engine.dispose()


class SqlEventDeduplicator(_SqlBackend):
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(session_factory)
        self._clock = clock

    async def has(self, event_id: str) -> bool:
        def _exists() -> bool:
            with _session_scope(self._session_factory, "lookup event") as db:
                found = db.scalar(select(EventRecord.id).where(EventRecord.event_id == event_id))
                return found is not None

        return await self._run(_exists)

    async def mark(self, event_id: str) -> None:
        await self.claim(event_id)

    async def claim(self, event_id: str) -> bool:
        def _insert() -> bool:
            try:
                with _session_scope(self._session_factory, "claim event") as db:
                    db.add(EventRecord(event_id=event_id, content=None, created_at=self._clock()))
                    db.commit()
            except IntegrityError:
                return False
            return True

        return await self._run(_insert)

    async def record_content(self, event_id: str, content: str) -> None:
        def _update() -> None:
            with _session_scope(self._session_factory, "record event content") as db:
                db.execute(
                    update(EventRecord)
                    .where(EventRecord.event_id == event_id)
                    .values(content=content)
                )
                db.commit()

        await self._run(_update)


class SqlSessionAliasStore(_SqlBackend):
    async def get_alias(self, session_key: str) -> Optional[str]:
        def _get() -> Optional[str]:
            with _session_scope(self._session_factory, "load alias") as db:
                row = db.get(SessionAliasRecord, session_key)
                return row.session_id if row else None

        return await self._run(_get)

    async def set_alias(self, session_key: str, session_id: str) -> None:
        def _set() -> None:
            with _session_scope(self._session_factory, "save alias") as db:
                db.merge(SessionAliasRecord(session_key=session_key, session_id=session_id))
                db.commit()

        await self._run(_set)

    async def delete_alias(self, session_key: str) -> None:
        def _delete() -> None:
            with _session_scope(self._session_factory, "delete alias") as db:
                db.execute(
                    delete(SessionAliasRecord).where(SessionAliasRecord.session_key == session_key)
                )
                db.commit()

        await self._run(_delete)


__all__ = ["SqlConversationStore", "SqlEventDeduplicator", "SqlSessionAliasStore"]
