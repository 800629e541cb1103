"""
Discovery documents: Protected Resource Metadata (RFC 9728) and
Authorization Server Metadata (RFC 8414). Both are derived from settings.
"""
from fastapi import APIRouter, Depends

from password_oauth.clients import SUPPORTED_AUTH_METHODS
from password_oauth.config import OAuthSettings, get_settings

router = APIRouter()


def protected_resource_metadata(settings: OAuthSettings) -> dict:
    return {
        "resource": settings.server_url,
        "authorization_servers": [settings.server_url],
        "bearer_methods_supported": ["header"],
        "resource_documentation": f"{settings.server_url}/docs",
        "scopes_supported": list(settings.scopes),
    }


def authorization_server_metadata(settings: OAuthSettings) -> dict:
    base = settings.server_url
    return {
        "issuer": base,
        "authorization_endpoint": f"{base}/oauth/authorize",
        "token_endpoint": f"{base}/oauth/token",
        "registration_endpoint": f"{base}/oauth/register",
        "scopes_supported": list(settings.scopes),
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": list(SUPPORTED_AUTH_METHODS),
        "service_documentation": f"{base}/docs",
    }


@router.get("/.well-known/oauth-protected-resource")
def oauth_protected_resource(settings: OAuthSettings = Depends(get_settings)):
    return protected_resource_metadata(settings)


@router.get("/.well-known/oauth-authorization-server")
def oauth_authorization_server(settings: OAuthSettings = Depends(get_settings)):
    return authorization_server_metadata(settings)
