"""
Client authentication at the token endpoint. RFC 6749 §2.3.1.
Credentials via Authorization: Basic base64(client_id:client_secret) or client_id + client_secret in the body.
"""
import base64
import binascii
import logging
from urllib.parse import unquote

from fastapi import Request

from password_oauth.clients import AUTH_METHOD_NONE, ClientRegistry, resolve_auth_method
from password_oauth.config import OAuthSettings
from password_oauth.errors import INVALID_CLIENT, OAuthError

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str | None) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        encoded = header_value.strip()[6:].strip()
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    # RFC 6749 §2.3.1: both parts are form-urlencoded before base64
    return unquote(client_id.strip()), unquote(client_secret)


def get_client_credentials_from_request(
    request: Request,
    client_id_body: str | None,
    client_secret_body: str | None,
) -> tuple[object, object]:
    """
    Get (client_id, client_secret) from the body, falling back to Authorization Basic.
    Body values win when present. Values are returned unvalidated; callers type-check them.
    """
    basic = _parse_basic(request.headers.get("Authorization"))
    if client_id_body is not None:
        if client_secret_body is None and basic and basic[0] == client_id_body:
            return client_id_body, basic[1]
        return client_id_body, client_secret_body
    if basic:
        return basic
    return None, client_secret_body


def authenticate_client(
    registry: ClientRegistry,
    settings: OAuthSettings,
    client_id: str,
    client_secret: object,
) -> None:
    """
    Apply the client's declared auth method. Public clients ("none") only need to exist;
    everyone else, including the static client, must present a matching secret.
    Raises OAuthError(invalid_client) on failure.
    """
    client = registry.lookup(client_id)
    auth_method = resolve_auth_method(client)

    if auth_method == AUTH_METHOD_NONE:
        if client is None and client_id != settings.client_id:
            raise OAuthError(INVALID_CLIENT, "Invalid client_id")
        return

    if not client_secret or not isinstance(client_secret, str):
        logger.warning("Token request for client_id=%s without client_secret", client_id)
        raise OAuthError(INVALID_CLIENT, "Missing or invalid client_secret")

    if not registry.validate_credentials(
        client_id, client_secret, settings.client_id, settings.client_secret
    ):
        logger.warning("Invalid client credentials for client_id=%s", client_id)
        raise OAuthError(INVALID_CLIENT, "Invalid client_id or client_secret")
