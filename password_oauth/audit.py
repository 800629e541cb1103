"""
Audit logging for security-relevant events. No codes, secrets, or passwords are recorded.
Writing an event never fails the request that triggered it.
"""
import logging

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from password_oauth.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_SUCCESS = "login_success"
EVENT_LOGIN_FAILURE = "login_failure"
EVENT_AUTHORIZE_REQUEST = "authorize_request"
EVENT_TOKEN_EXCHANGE = "token_exchange"
EVENT_TOKEN_FAILURE = "token_failure"
EVENT_CLIENT_REGISTRATION = "client_registration"


def get_client_ip(request: Request | None) -> str | None:
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event: str,
    request: Request | None = None,
    *,
    success: bool,
    client_id: str | None = None,
    error_message: str | None = None,
) -> None:
    """Append one audit record."""
    ip = get_client_ip(request)
    try:
        db.add(
            AuditLog(
                event=event,
                ip=ip,
                user_agent=request.headers.get("user-agent") if request is not None else None,
                client_id=client_id,
                success=success,
                error_message=error_message,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record audit event %s", event)
        return
    logger.info("%s %s from %s", event.upper(), "SUCCESS" if success else "FAILURE", ip)
