from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .logging_config import logger
from .models import PromptMessage
from .settings import Settings


FALLBACK_MESSAGE = "⚠️ An error occurred while processing your request."
RATE_LIMITED_MESSAGE = "Too many questions. Please wait and try again later."


class UpstreamAIError(Exception):
    """
    Any failed round trip to the AI backend: timeout, transport error,
    non-2xx status or a body without an answer.

    `user_message` is what the chat user sees instead of an answer.
    """

    def __init__(
        self,
        *,
        status_code: Optional[int],
        message: str,
        text: str = "",
        user_message: str = FALLBACK_MESSAGE,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.text = text
        self.user_message = user_message


@dataclass(frozen=True)
class AIReply:
    text: str
    session_id: Optional[str] = None


class AIBackend(Protocol):
    name: str

    async def ask(
        self,
        question: str,
        session_id: str,
        prompt: List[PromptMessage],
    ) -> AIReply:
        ...


async def _post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Dict[str, str],
    json_body: Dict[str, Any],
    timeout: float,
) -> Any:
    """
    POST and decode a JSON body, mapping every failure to UpstreamAIError.
    """
    try:
        resp = await client.post(url, headers=headers, json=json_body, timeout=timeout)
    except httpx.TimeoutException as exc:
        logger.warning("upstream: timeout after %.1fs calling %s", timeout, url)
        raise UpstreamAIError(
            status_code=None, message="Upstream timeout", text=str(exc)
        ) from exc
    except httpx.HTTPError as exc:
        logger.warning("upstream: transport error calling %s: %s", url, exc)
        raise UpstreamAIError(
            status_code=None, message="Upstream transport error", text=str(exc)
        ) from exc

    if resp.status_code == 429:
        logger.warning("upstream: rate limited by %s", url)
        raise UpstreamAIError(
            status_code=429,
            message="Upstream rate limited",
            text=resp.text,
            user_message=RATE_LIMITED_MESSAGE,
        )
    if resp.status_code >= 400:
        logger.warning(
            "upstream: HTTP error %s for %s; response=%s",
            resp.status_code,
            url,
            resp.text,
        )
        raise UpstreamAIError(
            status_code=resp.status_code,
            message=f"Upstream HTTP error {resp.status_code}",
            text=resp.text,
        )

    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamAIError(
            status_code=resp.status_code,
            message="Upstream returned a non-JSON body",
            text=resp.text,
        ) from exc


class OpenAIChatBackend:
    """
    OpenAI-compatible chat completions; the whole retained window is sent
    as `messages`.
    """

    name = "openai"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 50.0,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._model = model
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._timeout = timeout

    async def ask(
        self,
        question: str,
        session_id: str,
        prompt: List[PromptMessage],
    ) -> AIReply:
        data = await _post_json(
            self._client,
            self._url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            json_body={
                "model": self._model,
                "messages": [m.model_dump() for m in prompt],
            },
            timeout=self._timeout,
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise UpstreamAIError(
                status_code=200,
                message="Upstream response has no choices[0].message.content",
                text=str(data),
            ) from exc
        # Completion models tend to open with a blank line pair.
        text = content.replace("\n\n", "", 1) if isinstance(content, str) else ""
        if not text.strip():
            raise UpstreamAIError(
                status_code=200, message="Upstream returned an empty answer", text=str(data)
            )
        return AIReply(text=text)


class FlowiseBackend:
    """
    Flowise prediction API. The flow keeps its own memory keyed by the
    session id, so only the new question is sent.
    """

    name = "flowise"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_url: str,
        api_key: Optional[str] = None,
        session_mode: str = "override_config",
        timeout: float = 50.0,
    ) -> None:
        self._client = client
        self._url = api_url
        self._api_key = api_key
        self._session_mode = session_mode
        self._timeout = timeout

    def build_payload(self, question: str, session_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"question": question}
        if self._session_mode == "body":
            payload["sessionId"] = session_id
        else:
            payload["overrideConfig"] = {"sessionId": session_id}
        return payload

    async def ask(
        self,
        question: str,
        session_id: str,
        prompt: List[PromptMessage],
    ) -> AIReply:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        data = await _post_json(
            self._client,
            self._url,
            headers=headers,
            json_body=self.build_payload(question, session_id),
            timeout=self._timeout,
        )
        text = data.get("text") if isinstance(data, dict) else None
        if not isinstance(text, str) or not text:
            raise UpstreamAIError(
                status_code=200,
                message="Invalid response from Flowise API",
                text=str(data),
            )
        reported = data.get("sessionId")
        if not isinstance(reported, str) or not reported:
            reported = None
        return AIReply(text=text, session_id=reported)


def build_ai_backend(settings: Settings, client: httpx.AsyncClient) -> AIBackend:
    if settings.ai_backend == "flowise":
        return FlowiseBackend(
            client,
            api_url=settings.flowise_api_url,
            api_key=settings.flowise_api_key,
            session_mode=settings.flowise_session_mode,
            timeout=settings.upstream_timeout,
        )
    if settings.ai_backend == "openai":
        return OpenAIChatBackend(
            client,
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout=settings.upstream_timeout,
        )
    raise ValueError(f"Unknown AI_BACKEND '{settings.ai_backend}'")


__all__ = [
    "FALLBACK_MESSAGE",
    "RATE_LIMITED_MESSAGE",
    "UpstreamAIError",
    "AIReply",
    "AIBackend",
    "OpenAIChatBackend",
    "FlowiseBackend",
    "build_ai_backend",
]
