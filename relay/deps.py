from fastapi import Request

from .lark_client import ReplySender
from .relay_service import ConversationRelay
from .settings import Settings


async def get_relay(request: Request) -> ConversationRelay:
    """
    FastAPI dependency returning the process-wide relay built by the app
    factory. Tests pass their own relay to create_app instead.
    """
    return request.app.state.relay


async def get_replier(request: Request) -> ReplySender:
    return request.app.state.replier


async def get_settings(request: Request) -> Settings:
    return request.app.state.settings
