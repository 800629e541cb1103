"""
Token endpoint (POST /oauth/token). Authorization code exchange with PKCE.

validate params -> resolve client_id -> authenticate client -> check verifier format
-> redeem code -> check client/redirect binding -> verify PKCE -> issue token.

The code is claimed atomically before the binding checks, so any mismatch leaves it
burned: a failed exchange cannot be retried with corrected parameters.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from password_oauth.audit import EVENT_TOKEN_EXCHANGE, EVENT_TOKEN_FAILURE, log_audit
from password_oauth.client_auth import authenticate_client, get_client_credentials_from_request
from password_oauth.clients import ClientRegistry
from password_oauth.config import OAuthSettings, get_settings
from password_oauth.database import get_db
from password_oauth.errors import (
    INVALID_GRANT,
    INVALID_REQUEST,
    UNSUPPORTED_GRANT_TYPE,
    OAuthError,
)
from password_oauth.pkce import validate_code_verifier, verify
from password_oauth.rate_limit import BUCKET_TOKEN, RateLimit
from password_oauth.storage import AuthorizationCodeStore

logger = logging.getLogger(__name__)
router = APIRouter()


async def read_token_request(request: Request) -> dict:
    """Dependency: token request parameters from a form or JSON body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise OAuthError(INVALID_REQUEST, "Malformed JSON body")
        if not isinstance(body, dict):
            raise OAuthError(INVALID_REQUEST, "Request body must be a JSON object")
        return body
    form = await request.form()
    # RFC 6749 §3.2: parameters must not be repeated; a repeated one counts as missing
    params = {}
    for key in form.keys():
        values = form.getlist(key)
        if len(values) == 1:
            params[key] = values[0]
    return params


def _require_str(params: dict, name: str) -> str:
    value = params.get(name)
    if not value or not isinstance(value, str):
        raise OAuthError(INVALID_REQUEST, f"Missing or invalid {name}")
    return value


def exchange_authorization_code(
    params: dict,
    *,
    request: Request,
    settings: OAuthSettings,
    db: Session,
) -> dict:
    grant_type = params.get("grant_type")
    if grant_type != "authorization_code":
        raise OAuthError(UNSUPPORTED_GRANT_TYPE, 'Only "authorization_code" grant_type is supported')

    code = _require_str(params, "code")
    redirect_uri = _require_str(params, "redirect_uri")
    code_verifier = _require_str(params, "code_verifier")

    registry = ClientRegistry(db)
    codes = AuthorizationCodeStore(db, settings.code_ttl_seconds)

    client_id, client_secret = get_client_credentials_from_request(
        request, params.get("client_id"), params.get("client_secret")
    )
    if not client_id or not isinstance(client_id, str):
        # Compatibility: some clients omit client_id on the token request; adopt the one
        # the code was issued to. Disable with allow_client_id_from_code=False.
        stored = codes.fetch(code) if settings.allow_client_id_from_code else None
        if stored is None:
            raise OAuthError(INVALID_REQUEST, "Missing or invalid client_id")
        client_id = stored.client_id
        logger.info("client_id not provided, using client_id=%s from authorization code", client_id)

    authenticate_client(registry, settings, client_id, client_secret)

    if not validate_code_verifier(code_verifier):
        raise OAuthError(INVALID_REQUEST, "Invalid code_verifier format")

    stored = codes.redeem(code)
    if stored is None:
        raise OAuthError(INVALID_GRANT, "Invalid or expired authorization code")

    if stored.client_id != client_id:
        logger.warning("Authorization code presented by client_id=%s belongs to another client", client_id)
        raise OAuthError(INVALID_GRANT, "client_id mismatch")

    if stored.redirect_uri != redirect_uri:
        logger.warning("redirect_uri mismatch on token request for client_id=%s", client_id)
        raise OAuthError(INVALID_GRANT, "redirect_uri mismatch")

    if not verify(code_verifier, stored.code_challenge):
        logger.warning("PKCE verification failed for client_id=%s", client_id)
        log_audit(
            db,
            EVENT_TOKEN_FAILURE,
            request,
            success=False,
            client_id=client_id,
            error_message="PKCE verification failed",
        )
        raise OAuthError(INVALID_GRANT, "PKCE verification failed")

    log_audit(db, EVENT_TOKEN_EXCHANGE, request, success=True, client_id=client_id)
    logger.info("Token exchange successful for client_id=%s", client_id)

    # Single pre-shared bearer value; it carries no per-issuance identity and does not expire.
    return {
        "access_token": settings.api_key,
        "token_type": "Bearer",
        "scope": stored.scope or settings.default_scope,
    }


@router.post("/oauth/token", dependencies=[Depends(RateLimit(BUCKET_TOKEN))])
def token(
    request: Request,
    params: dict = Depends(read_token_request),
    settings: OAuthSettings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    """Exchange an authorization code for the access token."""
    body = exchange_authorization_code(params, request=request, settings=settings, db=db)
    return JSONResponse(body, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})
