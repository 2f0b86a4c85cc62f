from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status
from fastapi.responses import Response
from pydantic import BaseModel, Field

from relay.auth import require_admin_token
from relay.deps import get_relay
from relay.models import Turn
from relay.relay_service import ConversationRelay


class SessionContext(BaseModel):
    session_id: str
    turns: List[Turn] = Field(default_factory=list)
    total_size: int = Field(0, description="Sum of size_bytes over retained turns")
    budget: int = Field(..., description="Configured eviction budget")


router = APIRouter(
    tags=["context"],
    dependencies=[Depends(require_admin_token)],
)


@router.get("/context/{session_id}", response_model=SessionContext)
async def get_context_endpoint(
    session_id: str,
    relay: ConversationRelay = Depends(get_relay),
) -> SessionContext:
    """
    Return the retained turns of a session, oldest first.
    """
    turns = await relay.store.list_turns(session_id)
    return SessionContext(
        session_id=session_id,
        turns=turns,
        total_size=sum(t.size_bytes for t in turns),
        budget=relay.budget,
    )


@router.delete(
    "/context/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_context_endpoint(
    session_id: str,
    relay: ConversationRelay = Depends(get_relay),
) -> Response:
    """
    Drop every retained turn of a session, same as the user sending /clear.
    """
    async with relay.locks.hold(session_id):
        await relay.store.clear(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


__all__ = ["router", "SessionContext"]
