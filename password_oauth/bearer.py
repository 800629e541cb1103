"""
Bearer protection for resource endpoints. The only valid token is the configured API key,
the same value the token endpoint hands out.
"""
import hmac
import logging
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from password_oauth.config import OAuthSettings, get_settings
from password_oauth.errors import OAuthError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def www_authenticate_header(settings: OAuthSettings) -> str:
    return ", ".join(
        [
            f'Bearer realm="{settings.server_url}"',
            f'resource_metadata="{settings.server_url}/.well-known/oauth-protected-resource"',
            f'scope="{settings.default_scope}"',
        ]
    )


def require_api_key(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[OAuthSettings, Depends(get_settings)],
) -> str:
    """Dependency: 401 unless Authorization is 'Bearer <api key>'. Returns the token."""
    headers = {"WWW-Authenticate": www_authenticate_header(settings)}
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise OAuthError("unauthorized", "Bearer token required", status_code=401, headers=headers)
    token = credentials.credentials
    if not hmac.compare_digest(token.encode("utf-8"), settings.api_key.encode("utf-8")):
        logger.warning("Rejected bearer token")
        raise OAuthError(
            "invalid_token",
            "Bearer token is invalid or expired",
            status_code=401,
            headers=headers,
        )
    return token
