"""
Password login. GET /oauth/authorize renders this page for unauthenticated user agents;
POST /login checks the single shared password, marks the session authenticated, and
replays the original authorization request.
"""
import html
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.orm import Session

from password_oauth.audit import EVENT_LOGIN_FAILURE, EVENT_LOGIN_SUCCESS, log_audit
from password_oauth.config import OAuthSettings, get_settings
from password_oauth.database import get_db
from password_oauth.passwords import verify_password
from password_oauth.rate_limit import BUCKET_LOGIN, RateLimit

logger = logging.getLogger(__name__)
router = APIRouter()

DEFAULT_ORIGINAL_URL = "/oauth/authorize"


def render_login_page(original_url: str, error: str | None = None, status_code: int = 200) -> HTMLResponse:
    """Login form; original_url round-trips as a hidden field (escaped for XSS)."""
    def e(s: str | None) -> str:
        return html.escape(s or "")

    error_html = f'<p class="error" style="color:red;">{e(error)}</p>' if error else ""
    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Log in</title></head>
<body>
  <h1>Log in</h1>
  <p>Enter the server password to authorize this application.</p>
  {error_html}
  <form method="post" action="/login">
    <input type="hidden" name="original_url" value="{e(original_url)}"/>
    <label>Password: <input type="password" name="password" autofocus required/></label><br/>
    <button type="submit">Log in</button>
  </form>
</body>
</html>"""
    return HTMLResponse(body, status_code=status_code)


def _is_local_path(url: str) -> bool:
    return url.startswith("/") and not url.startswith("//") and "\\" not in url


@router.post("/login", dependencies=[Depends(RateLimit(BUCKET_LOGIN))])
def login(
    request: Request,
    password: str | None = Form(None),
    original_url: str | None = Form(None),
    settings: OAuthSettings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    """
    Verify the password. On success: set session.authenticated and redirect to original_url.
    On failure: re-show the login form with an error.
    """
    if not password:
        fallback = original_url or DEFAULT_ORIGINAL_URL
        return render_login_page(fallback, error="Password is required", status_code=400)

    if not original_url:
        return PlainTextResponse("Missing original_url", status_code=400)
    if not _is_local_path(original_url):
        return PlainTextResponse("Invalid original_url", status_code=400)

    if not settings.password_hash:
        logger.error("Login attempted but OAUTH_PASSWORD_HASH is not configured")
        return PlainTextResponse("Server configuration error", status_code=500)

    if not verify_password(password, settings.password_hash):
        logger.warning("Invalid password on login attempt")
        log_audit(db, EVENT_LOGIN_FAILURE, request, success=False, error_message="Invalid password")
        return render_login_page(original_url, error="Invalid password", status_code=401)

    request.session["authenticated"] = True
    log_audit(db, EVENT_LOGIN_SUCCESS, request, success=True)
    logger.info("Login successful, resuming authorization request")
    return RedirectResponse(url=original_url, status_code=302)
