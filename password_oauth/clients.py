"""
Client registry: the static pre-provisioned client plus clients registered at runtime
(RFC 7591). Registered clients are immutable and never deleted.
"""
import hmac
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from password_oauth.errors import StorageError
from password_oauth.models import OAuthClient, _utc_now
from password_oauth.passwords import hash_password, verify_password

logger = logging.getLogger(__name__)

AUTH_METHOD_POST = "client_secret_post"
AUTH_METHOD_BASIC = "client_secret_basic"
AUTH_METHOD_NONE = "none"
SUPPORTED_AUTH_METHODS = (AUTH_METHOD_POST, AUTH_METHOD_BASIC, AUTH_METHOD_NONE)
SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")
SUPPORTED_RESPONSE_TYPES = ("code",)

CLIENT_ID_PREFIX = "mcp-client-"


def generate_client_id() -> str:
    # 16 bytes -> 22 chars base64url
    return CLIENT_ID_PREFIX + secrets.token_urlsafe(16)


def generate_client_secret() -> str:
    # 32 bytes = 256 bits of entropy
    return secrets.token_urlsafe(32)


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


@dataclass(frozen=True)
class RegisteredClient:
    """Result of a registration. client_secret is only ever available here, in plaintext."""
    client_id: str
    client_secret: str | None
    client_name: str | None
    redirect_uris: list[str]
    token_endpoint_auth_method: str
    grant_types: list[str]
    response_types: list[str]
    scope: str | None
    created_at: datetime = field(default_factory=_utc_now)


class ClientRegistry:
    def __init__(self, db: Session):
        self.db = db

    def register(
        self,
        client_name: str | None,
        redirect_uris: list[str],
        token_endpoint_auth_method: str,
        grant_types: list[str],
        response_types: list[str],
        scope: str | None = None,
    ) -> RegisteredClient:
        client_id = generate_client_id()
        client_secret = None if token_endpoint_auth_method == AUTH_METHOD_NONE else generate_client_secret()
        created_at = _utc_now()
        try:
            self.db.add(
                OAuthClient(
                    client_id=client_id,
                    client_secret_hash=hash_password(client_secret) if client_secret else None,
                    client_name=client_name,
                    redirect_uris=json.dumps(list(redirect_uris)),
                    grant_types=json.dumps(list(grant_types)),
                    response_types=json.dumps(list(response_types)),
                    token_endpoint_auth_method=token_endpoint_auth_method,
                    scope=scope,
                    created_at=created_at,
                )
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to register client %s", client_id)
            raise StorageError("Failed to register OAuth client") from exc

        logger.info("Registered client %s (%s)", client_id, client_name or "unnamed")
        return RegisteredClient(
            client_id=client_id,
            client_secret=client_secret,
            client_name=client_name,
            redirect_uris=list(redirect_uris),
            token_endpoint_auth_method=token_endpoint_auth_method,
            grant_types=list(grant_types),
            response_types=list(response_types),
            scope=scope,
            created_at=created_at,
        )

    def lookup(self, client_id: str) -> OAuthClient | None:
        return self.db.query(OAuthClient).filter(OAuthClient.client_id == client_id).first()

    def validate_credentials(
        self,
        client_id: str,
        client_secret: str,
        static_client_id: str,
        static_client_secret: str,
    ) -> bool:
        """True if the pair matches the static client or a registered client's secret."""
        if _same(client_id, static_client_id) and _same(client_secret, static_client_secret):
            return True
        client = self.lookup(client_id)
        if client is None or not client.client_secret_hash:
            return False
        return verify_password(client_secret, client.client_secret_hash)

    def is_known_client_id(self, client_id: str, static_client_id: str) -> bool:
        if client_id == static_client_id:
            return True
        return self.lookup(client_id) is not None


def resolve_auth_method(client: OAuthClient | None) -> str:
    """Declared token endpoint auth method; unregistered ids (the static client) use client_secret_post."""
    if client is None:
        return AUTH_METHOD_POST
    return client.token_endpoint_auth_method
