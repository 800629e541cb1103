"""
Password-gated OAuth 2.1 authorization server.
install_oauth() mounts the endpoints on an existing FastAPI app; create_app() builds a
standalone one. Settings come from OAUTH_* environment variables unless passed in.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from password_oauth.authorize import router as authorize_router
from password_oauth.config import OAuthSettings
from password_oauth.database import create_db_engine, create_session_factory, init_db
from password_oauth.errors import register_error_handlers
from password_oauth.login import router as login_router
from password_oauth.rate_limit import SlidingWindowLimiter
from password_oauth.register import router as register_router
from password_oauth.storage import AuthorizationCodeStore
from password_oauth.token_endpoint import router as token_router
from password_oauth.well_known import router as well_known_router

logger = logging.getLogger(__name__)


def purge_expired_codes(app: FastAPI) -> int:
    """Delete expired authorization code rows. Safe to call periodically from an embedding app."""
    db = app.state.session_factory()
    try:
        return AuthorizationCodeStore(db).purge_expired()
    finally:
        db.close()


def install_oauth(app: FastAPI, settings: OAuthSettings) -> None:
    """
    Attach session cookies, storage, rate limiting, error handlers and OAuth routes to app.
    Codes that expired while the server was down are purged here.
    """
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    app.state.oauth_settings = settings
    app.state.session_factory = session_factory
    app.state.rate_limiter = SlidingWindowLimiter(settings.rate_limit_window_seconds)
    purge_expired_codes(app)

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=settings.session_name,
        max_age=settings.session_max_age,
        same_site="lax",
        https_only=settings.secure_cookies,
    )
    register_error_handlers(app)

    app.include_router(well_known_router, tags=["well-known"])
    app.include_router(authorize_router, tags=["authorize"])
    app.include_router(login_router, tags=["login"])
    app.include_router(token_router, tags=["token"])
    app.include_router(register_router, tags=["register"])


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("OAuth server ready at %s", app.state.oauth_settings.server_url)
    yield


def create_app(settings: OAuthSettings | None = None) -> FastAPI:
    if settings is None:
        settings = OAuthSettings.from_env()
    app = FastAPI(title="Password OAuth Server", version="1.0.0", lifespan=lifespan)
    install_oauth(app, settings)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "password_oauth"}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "password_oauth.main:create_app",
        factory=True,
        host="127.0.0.1",
        port=3456,
    )
