from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .auth import verify_lark_token
from .context_routes import router as context_router
from .deps import get_relay, get_replier, get_settings
from .errors import (
    MalformedInboundPayload,
    StoreUnavailable,
    bad_request,
    service_unavailable,
)
from .lark_client import LarkMessenger, ReplySender
from .logging_config import logger
from .models import RECEIVE_MESSAGE_EVENT, LarkEventHeader, LarkMessageEvent
from .redis_client import close_redis_client
from .relay_service import ConversationRelay
from .session_resolver import SessionIdentityResolver
from .settings import Settings, settings as default_settings
from .storage import build_backends
from .upstream import build_ai_backend


class HealthResponse(BaseModel):
    status: str = "ok"


class TeamsMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    session_id: str = Field(..., alias="sessionId")
    message_id: Optional[str] = Field(default=None, alias="messageId")


def validate_app_config(settings: Settings) -> Dict[str, Any]:
    """
    Answer for callbacks without a header: report missing settings so the
    operator can fix the deployment from the platform console.
    """
    missing = settings.missing_settings()
    if missing:
        return {"code": 1, "message": f"Missing configuration: {', '.join(missing)}"}
    return {"code": 0, "message": "configuration is valid"}


def _validation_details(exc: ValidationError) -> Dict[str, Any]:
    return {
        "errors": exc.errors(include_url=False, include_context=False, include_input=False)
    }


def _error_response(exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def build_relay(settings: Settings, client: httpx.AsyncClient) -> ConversationRelay:
    backends = build_backends(settings)
    return ConversationRelay(
        store=backends.store,
        deduplicator=backends.deduplicator,
        resolver=SessionIdentityResolver(backends.aliases),
        backend=build_ai_backend(settings, client),
        budget=settings.max_context_size,
        mention_token=settings.bot_mention_token,
        system_prompt=settings.system_prompt,
        group_require_mention=settings.group_require_mention,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    relay: Optional[ConversationRelay] = None,
    replier: Optional[ReplySender] = None,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "relay", None) is not None:
            yield
            return
        async with httpx.AsyncClient(timeout=settings.upstream_timeout) as client:
            app.state.relay = build_relay(settings, client)
            app.state.replier = LarkMessenger(
                client,
                app_id=settings.lark_app_id,
                app_secret=settings.lark_app_secret,
                base_url=settings.lark_base_url,
            )
            missing = settings.missing_settings()
            if missing:
                logger.warning("startup: missing configuration %s", ", ".join(missing))
            try:
                yield
            finally:
                await app.state.relay.close()
                if settings.store_backend == "redis":
                    await close_redis_client()

    app = FastAPI(title="Lark AI Relay", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.relay = relay
    app.state.replier = replier

    app.include_router(context_router)

    @app.exception_handler(MalformedInboundPayload)
    async def malformed_payload_handler(request: Request, exc: MalformedInboundPayload):
        logger.warning("Malformed payload on %s: %s", request.url.path, exc)
        return _error_response(bad_request(str(exc), details=exc.details))

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error("Store failure on %s: %s", request.url.path, exc)
        return _error_response(service_unavailable(str(exc)))

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Basic request/response logging middleware.
        """
        client_host = request.client.host if request.client else "-"
        logger.info("HTTP %s %s from %s", request.method, request.url.path, client_host)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled error while processing %s %s",
                request.method,
                request.url.path,
            )
            raise
        logger.info(
            "HTTP %s %s -> %s", request.method, request.url.path, response.status_code
        )
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse()

    @app.get("/api/test")
    async def api_test() -> Dict[str, str]:
        return {"message": "API is working"}

    @app.post("/webhook")
    @app.post("/api/index")
    async def lark_webhook(
        request: Request,
        relay: ConversationRelay = Depends(get_relay),
        replier: ReplySender = Depends(get_replier),
        settings: Settings = Depends(get_settings),
    ) -> Dict[str, Any]:
        """
        Lark event callback: URL verification handshake and message events.
        """
        try:
            params = await request.json()
        except ValueError:
            raise bad_request("Request body must be JSON")
        if not isinstance(params, dict):
            raise bad_request("Request body must be a JSON object")

        if params.get("type") == "url_verification":
            verify_lark_token(settings, params.get("token"))
            return {"challenge": params.get("challenge")}

        if params.get("encrypt"):
            return {"code": 1, "message": "Encryption is enabled, please disable it."}

        if not params.get("header"):
            return validate_app_config(settings)

        try:
            header = LarkEventHeader.model_validate(params["header"])
        except ValidationError as exc:
            raise MalformedInboundPayload(
                "Invalid event header", details=_validation_details(exc)
            ) from exc
        verify_lark_token(settings, header.token)

        if header.event_type != RECEIVE_MESSAGE_EVENT:
            logger.info("webhook: unhandled event type %s", header.event_type)
            return {"code": 2}

        try:
            event = LarkMessageEvent.model_validate(params.get("event"))
        except ValidationError as exc:
            raise MalformedInboundPayload(
                "Invalid message event", details=_validation_details(exc)
            ) from exc

        return await relay.handle_message_event(header, event, replier)

    @app.post("/teams-webhook")
    async def teams_webhook(
        body: TeamsMessage,
        relay: ConversationRelay = Depends(get_relay),
    ):
        """
        Synchronous relay for Teams-style bridges: the answer is returned in
        the response body instead of being sent as a reply.
        """
        outcome = await relay.handle_text(body.text, body.session_id)
        if outcome.kind == "fallback":
            return JSONResponse(status_code=500, content={"error": "Error processing request"})
        return {"message": outcome.reply}

    return app


__all__ = ["create_app", "build_relay", "validate_app_config"]
