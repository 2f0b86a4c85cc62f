import base64
import hmac
from typing import Optional

from fastapi import Header, Request

from .errors import unauthorized
from .settings import Settings


def _decode_token(token: str) -> str:
    """
    Decode base64 token; raise if invalid.
    """
    try:
        decoded_bytes = base64.b64decode(token, validate=True)
        return decoded_bytes.decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        raise unauthorized("Invalid API token")


async def require_admin_token(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> str:
    """
    Guard for the inspection endpoints.

    Expects header: Authorization: Bearer <base64(token)>, where the decoded
    token must equal RELAY_ADMIN_TOKEN.
    """
    if not authorization:
        raise unauthorized("Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise unauthorized("Invalid Authorization header, expected 'Bearer <token>'")

    decoded = _decode_token(token)
    settings: Settings = request.app.state.settings
    if not hmac.compare_digest(decoded, settings.admin_token):
        raise unauthorized("Invalid API token")
    return decoded


def verify_lark_token(settings: Settings, token: Optional[str]) -> None:
    """
    Reject callbacks whose verification token does not match the configured
    one. No-op when LARK_VERIFICATION_TOKEN is unset.
    """
    expected = settings.lark_verification_token
    if not expected:
        return
    if not token or not hmac.compare_digest(token, expected):
        raise unauthorized("Invalid verification token")
