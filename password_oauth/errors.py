"""
OAuth error responses (RFC 6749 §5.2 shape: {"error", "error_description"}).
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

INVALID_REQUEST = "invalid_request"
INVALID_CLIENT = "invalid_client"
INVALID_GRANT = "invalid_grant"
UNAUTHORIZED_CLIENT = "unauthorized_client"
UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
INVALID_CLIENT_METADATA = "invalid_client_metadata"
INVALID_REDIRECT_URI = "invalid_redirect_uri"
SERVER_ERROR = "server_error"
TOO_MANY_REQUESTS = "too_many_requests"


class OAuthError(Exception):
    """Client-facing protocol error; rendered as JSON by oauth_error_handler."""

    def __init__(
        self,
        error: str,
        description: str | None = None,
        status_code: int = 400,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status_code = status_code
        self.headers = headers

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description is not None:
            body["error_description"] = self.description
        return body


class StorageError(Exception):
    """Persistence failed on a path that must not lose data (registration, code issuance)."""


def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers)


def server_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """StorageError and unexpected database failures become a generic server_error."""
    if not isinstance(exc, StorageError):
        logger.exception("Database error handling %s %s", request.method, request.url.path)
    return JSONResponse(
        {"error": SERVER_ERROR, "error_description": "Internal server error"},
        status_code=500,
    )


def register_error_handlers(app) -> None:
    app.add_exception_handler(OAuthError, oauth_error_handler)
    app.add_exception_handler(StorageError, server_error_handler)
    app.add_exception_handler(SQLAlchemyError, server_error_handler)
