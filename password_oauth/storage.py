"""
Authorization code storage. Codes live for code_ttl_seconds and are single-use.
Expired rows are treated as absent on every read; purge_expired only reclaims space.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from password_oauth.config import CODE_TTL_SECONDS
from password_oauth.errors import StorageError
from password_oauth.models import AuthorizationCode, _utc_now

logger = logging.getLogger(__name__)


def generate_code() -> str:
    # 32 bytes -> 43 chars base64url
    return secrets.token_urlsafe(32)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class StoredAuthCode:
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    scope: str | None
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_row(cls, row: AuthorizationCode) -> "StoredAuthCode":
        return cls(
            code=row.code,
            client_id=row.client_id,
            redirect_uri=row.redirect_uri,
            code_challenge=row.code_challenge,
            code_challenge_method=row.code_challenge_method,
            scope=row.scope,
            created_at=_as_utc(row.created_at),
            expires_at=_as_utc(row.expires_at),
        )


class AuthorizationCodeStore:
    def __init__(self, db: Session, ttl_seconds: int = CODE_TTL_SECONDS):
        self.db = db
        self.ttl_seconds = ttl_seconds

    def issue(
        self,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
        scope: str | None = None,
    ) -> str:
        code = generate_code()
        now = _utc_now()
        try:
            self.db.add(
                AuthorizationCode(
                    code=code,
                    client_id=client_id,
                    redirect_uri=redirect_uri,
                    code_challenge=code_challenge,
                    code_challenge_method=code_challenge_method,
                    scope=scope,
                    created_at=now,
                    expires_at=now + timedelta(seconds=self.ttl_seconds),
                )
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to store authorization code for client_id=%s", client_id)
            raise StorageError("Failed to store authorization code") from exc
        logger.info("Authorization code issued for client_id=%s", client_id)
        return code

    def fetch(self, code: str) -> StoredAuthCode | None:
        """Return the code if it exists and has not expired, without consuming it."""
        row = (
            self.db.query(AuthorizationCode)
            .filter(AuthorizationCode.code == code, AuthorizationCode.expires_at > _utc_now())
            .first()
        )
        if row is None:
            logger.debug("Authorization code not found or expired")
            return None
        return StoredAuthCode.from_row(row)

    def consume(self, code: str) -> None:
        """Delete the code. Idempotent; failures are logged, never raised."""
        try:
            self.db.execute(
                delete(AuthorizationCode)
                .where(AuthorizationCode.code == code)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to delete authorization code")

    def redeem(self, code: str) -> StoredAuthCode | None:
        """
        Claim the code: delete it and return what was stored, or None if it was missing,
        expired, or claimed by a concurrent request first. Only the request whose DELETE
        removed the row gets the record back.
        """
        stored = self.fetch(code)
        if stored is None:
            return None
        try:
            result = self.db.execute(
                delete(AuthorizationCode)
                .where(AuthorizationCode.code == code, AuthorizationCode.expires_at > _utc_now())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        if result.rowcount != 1:
            logger.warning("Authorization code for client_id=%s was redeemed concurrently", stored.client_id)
            return None
        return stored

    def purge_expired(self) -> int:
        """Delete expired rows; returns how many were removed."""
        result = self.db.execute(
            delete(AuthorizationCode)
            .where(AuthorizationCode.expires_at <= _utc_now())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount:
            logger.info("Purged %s expired authorization codes", result.rowcount)
        return result.rowcount
