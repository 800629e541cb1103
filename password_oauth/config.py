"""
Server configuration. One immutable OAuthSettings value is built at startup and passed
to every component; secrets come from the environment, never from this file.
"""
import os
from dataclasses import dataclass

from fastapi import Request

# Authorization code lifetime (seconds)
CODE_TTL_SECONDS = 600

DEFAULT_ALLOWED_REDIRECT_PREFIXES = ("https://claude.ai/", "http://localhost:")
DEFAULT_SCOPES = ("mcp:tools:*", "mcp:resources:*", "mcp:prompts:*")
DEFAULT_SESSION_NAME = "mcp_session"
DEFAULT_SESSION_MAX_AGE = 30 * 24 * 60 * 60  # 30 days

# Rate limiting: attempts per window, per client IP. 0 disables a bucket.
DEFAULT_RATE_LIMIT_LOGIN = 5
DEFAULT_RATE_LIMIT_TOKEN = 10
DEFAULT_RATE_LIMIT_AUTHORIZE = 20
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 15 * 60


class ConfigError(ValueError):
    """Required configuration is missing or malformed."""


def _split_list(raw: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if raw is None or not raw.strip():
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _flag(raw: str | None, default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class OAuthSettings:
    client_id: str
    client_secret: str
    session_secret: str
    api_key: str
    server_url: str = "http://127.0.0.1:3456"
    database_url: str = "sqlite:///./password_oauth.db"
    # bcrypt hash of the single login password
    password_hash: str = ""
    session_name: str = DEFAULT_SESSION_NAME
    session_max_age: int = DEFAULT_SESSION_MAX_AGE
    allowed_redirect_prefixes: tuple[str, ...] = DEFAULT_ALLOWED_REDIRECT_PREFIXES
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    code_ttl_seconds: int = CODE_TTL_SECONDS
    # Token requests without client_id adopt the client_id stored on the code record.
    # Non-standard; turn off for strict deployments.
    allow_client_id_from_code: bool = True
    rate_limit_login: int = DEFAULT_RATE_LIMIT_LOGIN
    rate_limit_token: int = DEFAULT_RATE_LIMIT_TOKEN
    rate_limit_authorize: int = DEFAULT_RATE_LIMIT_AUTHORIZE
    rate_limit_window_seconds: int = DEFAULT_RATE_LIMIT_WINDOW_SECONDS

    def __post_init__(self):
        object.__setattr__(self, "server_url", self.server_url.rstrip("/"))

    @property
    def secure_cookies(self) -> bool:
        return self.server_url.startswith("https://")

    @property
    def default_scope(self) -> str:
        return " ".join(self.scopes)

    @classmethod
    def from_env(cls) -> "OAuthSettings":
        """Build settings from OAUTH_* environment variables."""
        required = {
            "client_id": "OAUTH_CLIENT_ID",
            "client_secret": "OAUTH_CLIENT_SECRET",
            "session_secret": "OAUTH_SESSION_SECRET",
            "api_key": "OAUTH_API_KEY",
        }
        values = {field: os.environ.get(env, "").strip() for field, env in required.items()}
        missing = [required[field] for field, value in values.items() if not value]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            **values,
            server_url=os.environ.get("OAUTH_SERVER_URL", "http://127.0.0.1:3456"),
            database_url=os.environ.get("OAUTH_DATABASE_URL", "sqlite:///./password_oauth.db"),
            password_hash=os.environ.get("OAUTH_PASSWORD_HASH", "").strip(),
            session_name=os.environ.get("OAUTH_SESSION_NAME", DEFAULT_SESSION_NAME),
            session_max_age=_int("OAUTH_SESSION_MAX_AGE", DEFAULT_SESSION_MAX_AGE),
            allowed_redirect_prefixes=_split_list(
                os.environ.get("OAUTH_ALLOWED_REDIRECT_PREFIXES"), DEFAULT_ALLOWED_REDIRECT_PREFIXES
            ),
            scopes=_split_list(os.environ.get("OAUTH_SCOPES"), DEFAULT_SCOPES),
            allow_client_id_from_code=_flag(os.environ.get("OAUTH_ALLOW_CLIENT_ID_FROM_CODE"), True),
            rate_limit_login=_int("OAUTH_RATE_LIMIT_LOGIN", DEFAULT_RATE_LIMIT_LOGIN),
            rate_limit_token=_int("OAUTH_RATE_LIMIT_TOKEN", DEFAULT_RATE_LIMIT_TOKEN),
            rate_limit_authorize=_int("OAUTH_RATE_LIMIT_AUTHORIZE", DEFAULT_RATE_LIMIT_AUTHORIZE),
            rate_limit_window_seconds=_int(
                "OAUTH_RATE_LIMIT_WINDOW_SECONDS", DEFAULT_RATE_LIMIT_WINDOW_SECONDS
            ),
        )


def get_settings(request: Request) -> OAuthSettings:
    """Dependency: the settings the app was installed with."""
    return request.app.state.oauth_settings
