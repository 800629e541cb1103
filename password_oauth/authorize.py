"""
Authorization endpoint. GET /oauth/authorize:
validate params -> check client -> check redirect_uri -> issue code (session authenticated)
or render the login page (not authenticated).
Errors are returned as 400 JSON, never redirected to the client.
"""
import logging
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from starlette.datastructures import QueryParams

from password_oauth.audit import EVENT_AUTHORIZE_REQUEST, log_audit
from password_oauth.clients import ClientRegistry
from password_oauth.config import OAuthSettings, get_settings
from password_oauth.database import get_db
from password_oauth.errors import (
    INVALID_REQUEST,
    UNAUTHORIZED_CLIENT,
    UNSUPPORTED_RESPONSE_TYPE,
    OAuthError,
)
from password_oauth.login import render_login_page
from password_oauth.pkce import validate_code_challenge
from password_oauth.rate_limit import BUCKET_AUTHORIZE, RateLimit
from password_oauth.storage import AuthorizationCodeStore

logger = logging.getLogger(__name__)
router = APIRouter()


@dataclass(frozen=True)
class AuthorizationRequest:
    client_id: str
    redirect_uri: str
    response_type: str
    code_challenge: str
    code_challenge_method: str
    state: str | None = None
    scope: str | None = None


def _single(params: QueryParams, name: str) -> str | None:
    """The parameter's value if it was sent exactly once, else None."""
    values = params.getlist(name)
    if len(values) != 1:
        return None
    return values[0]


def is_valid_redirect_uri(redirect_uri: str, allowed_prefixes) -> bool:
    """Prefix whitelist for the static client."""
    return any(redirect_uri.startswith(prefix) for prefix in allowed_prefixes)


def validate_authorization_request(
    params: QueryParams,
    settings: OAuthSettings,
    registry: ClientRegistry,
) -> AuthorizationRequest:
    """Run the checks in order; the first failure raises OAuthError."""
    client_id = _single(params, "client_id")
    if not client_id:
        raise OAuthError(INVALID_REQUEST, "Missing or invalid client_id")

    redirect_uri = _single(params, "redirect_uri")
    if not redirect_uri:
        raise OAuthError(INVALID_REQUEST, "Missing or invalid redirect_uri")

    response_type = _single(params, "response_type")
    if response_type != "code":
        raise OAuthError(UNSUPPORTED_RESPONSE_TYPE, 'Only "code" response_type is supported')

    code_challenge = _single(params, "code_challenge")
    if not code_challenge:
        raise OAuthError(INVALID_REQUEST, "Missing or invalid code_challenge")

    code_challenge_method = _single(params, "code_challenge_method")
    if code_challenge_method != "S256":
        raise OAuthError(INVALID_REQUEST, 'Only "S256" code_challenge_method is supported')

    if not validate_code_challenge(code_challenge):
        raise OAuthError(INVALID_REQUEST, "Invalid code_challenge format")

    if not registry.is_known_client_id(client_id, settings.client_id):
        raise OAuthError(UNAUTHORIZED_CLIENT, "Invalid client_id")

    # Static client: prefix whitelist. Dynamic client: exact match on registered URIs.
    if client_id == settings.client_id:
        redirect_ok = is_valid_redirect_uri(redirect_uri, settings.allowed_redirect_prefixes)
    else:
        client = registry.lookup(client_id)
        redirect_ok = client is not None and client.redirect_uri_allowed(redirect_uri)
    if not redirect_ok:
        logger.warning("Rejected redirect_uri for client_id=%s", client_id)
        raise OAuthError(INVALID_REQUEST, "Unauthorized redirect_uri")

    return AuthorizationRequest(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        state=_single(params, "state"),
        scope=_single(params, "scope"),
    )


def build_redirect_url(redirect_uri: str, params: dict[str, str]) -> str:
    """Set params on redirect_uri's query, replacing same-named ones and keeping the rest."""
    parts = urlsplit(redirect_uri)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def approve_and_redirect(codes: AuthorizationCodeStore, auth_req: AuthorizationRequest) -> RedirectResponse:
    code = codes.issue(
        auth_req.client_id,
        auth_req.redirect_uri,
        auth_req.code_challenge,
        auth_req.code_challenge_method,
        auth_req.scope,
    )
    params = {"code": code}
    # state is opaque: echoed back untouched
    if auth_req.state is not None:
        params["state"] = auth_req.state
    return RedirectResponse(url=build_redirect_url(auth_req.redirect_uri, params), status_code=302)


def _original_url(request: Request) -> str:
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


@router.get("/oauth/authorize", dependencies=[Depends(RateLimit(BUCKET_AUTHORIZE))])
def authorize(
    request: Request,
    settings: OAuthSettings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    """
    OAuth 2.1 authorization endpoint. Authenticated sessions are auto-approved;
    otherwise the login page is shown and the request is replayed after login.
    """
    registry = ClientRegistry(db)
    auth_req = validate_authorization_request(request.query_params, settings, registry)

    if request.session.get("authenticated"):
        logger.info("Session authenticated, auto-approving client_id=%s", auth_req.client_id)
        response = approve_and_redirect(AuthorizationCodeStore(db, settings.code_ttl_seconds), auth_req)
        log_audit(db, EVENT_AUTHORIZE_REQUEST, request, success=True, client_id=auth_req.client_id)
        return response

    logger.info("Session not authenticated, showing login for client_id=%s", auth_req.client_id)
    return render_login_page(_original_url(request))
