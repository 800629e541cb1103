"""
Dynamic Client Registration (RFC 7591). POST /oauth/register.
Lets clients register themselves without pre-configuration.
"""
import logging
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from password_oauth.audit import EVENT_CLIENT_REGISTRATION, log_audit
from password_oauth.clients import (
    AUTH_METHOD_BASIC,
    SUPPORTED_AUTH_METHODS,
    SUPPORTED_GRANT_TYPES,
    SUPPORTED_RESPONSE_TYPES,
    ClientRegistry,
    RegisteredClient,
)
from password_oauth.database import get_db
from password_oauth.errors import INVALID_CLIENT_METADATA, INVALID_REDIRECT_URI, OAuthError

logger = logging.getLogger(__name__)
router = APIRouter()

_LOCAL_HOSTS = ("localhost", "127.0.0.1")


def _string_list(body: dict, name: str, default: list[str]) -> list[str]:
    value = body.get(name)
    if value is None:
        return list(default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise OAuthError(INVALID_CLIENT_METADATA, f"{name} must be an array of strings")
    return value


def _optional_str(body: dict, name: str) -> str | None:
    value = body.get(name)
    if value is not None and not isinstance(value, str):
        raise OAuthError(INVALID_CLIENT_METADATA, f"{name} must be a string")
    return value


def validate_redirect_uri(uri: str) -> None:
    """Absolute URI using HTTPS, or any scheme on localhost / 127.0.0.1."""
    try:
        parts = urlsplit(uri)
        hostname = parts.hostname
    except ValueError:
        raise OAuthError(INVALID_REDIRECT_URI, f"Malformed redirect URI: {uri}")
    if not parts.scheme or not parts.netloc:
        raise OAuthError(INVALID_REDIRECT_URI, f"Malformed redirect URI: {uri}")
    if parts.scheme != "https" and hostname not in _LOCAL_HOSTS:
        raise OAuthError(
            INVALID_REDIRECT_URI,
            f"Invalid redirect URI: {uri}. Must use HTTPS or localhost.",
        )


def validate_registration(body: dict) -> dict:
    """Apply RFC 7591 §2 defaults and check the metadata; returns the register() arguments."""
    redirect_uris = _string_list(body, "redirect_uris", [])
    auth_method = _optional_str(body, "token_endpoint_auth_method") or AUTH_METHOD_BASIC
    grant_types = _string_list(body, "grant_types", ["authorization_code"])
    response_types = _string_list(body, "response_types", ["code"])

    if "authorization_code" in grant_types and not redirect_uris:
        raise OAuthError(INVALID_REDIRECT_URI, "redirect_uris is required for authorization_code grant")
    for uri in redirect_uris:
        validate_redirect_uri(uri)

    if auth_method not in SUPPORTED_AUTH_METHODS:
        raise OAuthError(
            INVALID_CLIENT_METADATA,
            f"Unsupported token_endpoint_auth_method: {auth_method}. "
            f"Supported: {', '.join(SUPPORTED_AUTH_METHODS)}",
        )
    for grant_type in grant_types:
        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise OAuthError(
                INVALID_CLIENT_METADATA,
                f"Unsupported grant_type: {grant_type}. Supported: {', '.join(SUPPORTED_GRANT_TYPES)}",
            )
    for response_type in response_types:
        if response_type not in SUPPORTED_RESPONSE_TYPES:
            raise OAuthError(
                INVALID_CLIENT_METADATA,
                f"Unsupported response_type: {response_type}. "
                f"Supported: {', '.join(SUPPORTED_RESPONSE_TYPES)}",
            )

    return {
        "client_name": _optional_str(body, "client_name"),
        "redirect_uris": redirect_uris,
        "token_endpoint_auth_method": auth_method,
        "grant_types": grant_types,
        "response_types": response_types,
        "scope": _optional_str(body, "scope"),
    }


def registration_response(client: RegisteredClient) -> dict:
    """RFC 7591 §3.2.1 body. Unset optional fields are omitted."""
    response = {
        "client_id": client.client_id,
        "client_secret": client.client_secret,
        "client_id_issued_at": int(client.created_at.timestamp()),
        "client_name": client.client_name,
        "redirect_uris": client.redirect_uris,
        "token_endpoint_auth_method": client.token_endpoint_auth_method,
        "grant_types": client.grant_types,
        "response_types": client.response_types,
        "scope": client.scope,
    }
    if client.client_secret is not None:
        response["client_secret_expires_at"] = 0  # never expires
    return {key: value for key, value in response.items() if value is not None}


async def read_registration_body(request: Request) -> dict:
    """Dependency: the registration metadata as a JSON object."""
    try:
        body = await request.json()
    except ValueError:
        raise OAuthError(INVALID_CLIENT_METADATA, "Request body must be a JSON object")
    if not isinstance(body, dict):
        raise OAuthError(INVALID_CLIENT_METADATA, "Request body must be a JSON object")
    return body


@router.post("/oauth/register", status_code=201)
def register(
    request: Request,
    body: dict = Depends(read_registration_body),
    db: Session = Depends(get_db),
):
    """Register a client; the response carries the only copy of its client_secret."""
    logger.info(
        "Registration request: client_name=%s redirect_uris=%s grant_types=%s",
        body.get("client_name"),
        body.get("redirect_uris"),
        body.get("grant_types"),
    )
    metadata = validate_registration(body)
    # StorageError propagates -> 500 server_error
    client = ClientRegistry(db).register(**metadata)
    log_audit(db, EVENT_CLIENT_REGISTRATION, request, success=True, client_id=client.client_id)
    return JSONResponse(registration_response(client), status_code=201)
