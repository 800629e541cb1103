"""
Tests for POST /oauth/token: authorization code exchange with PKCE and client authentication.
"""
import base64
import dataclasses
import hashlib
import secrets
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from password_oauth.clients import AUTH_METHOD_BASIC, AUTH_METHOD_NONE, AUTH_METHOD_POST, ClientRegistry
from password_oauth.main import create_app
from password_oauth.models import AuditLog, AuthorizationCode
from password_oauth.storage import AuthorizationCodeStore

REDIRECT = "http://localhost:9999/cb"
STATIC_REDIRECT = "https://claude.ai/api/mcp/auth_callback"


def _make_code_verifier_and_challenge():
    verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def _register(db, auth_method=AUTH_METHOD_NONE):
    return ClientRegistry(db).register(
        client_name="Token Test",
        redirect_uris=[REDIRECT],
        token_endpoint_auth_method=auth_method,
        grant_types=["authorization_code"],
        response_types=["code"],
    )


def _issue_code(db, client_id, redirect_uri=REDIRECT, scope=None):
    verifier, challenge = _make_code_verifier_and_challenge()
    code = AuthorizationCodeStore(db).issue(client_id, redirect_uri, challenge, "S256", scope)
    return code, verifier


def _token_form(code, verifier, client_id=None, redirect_uri=REDIRECT, **extra):
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": verifier,
    }
    if client_id is not None:
        data["client_id"] = client_id
    data.update(extra)
    return data


def _basic(client_id, client_secret):
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}


def _error(response):
    return response.json()["error"], response.json().get("error_description")


# --- end to end ---


def test_full_flow_public_client(client, password):
    reg = client.post(
        "/oauth/register",
        json={
            "client_name": "E2E",
            "redirect_uris": [REDIRECT],
            "token_endpoint_auth_method": "none",
        },
    )
    assert reg.status_code == 201
    client_id = reg.json()["client_id"]
    assert "client_secret" not in reg.json()

    verifier, challenge = _make_code_verifier_and_challenge()
    params = {
        "client_id": client_id,
        "redirect_uri": REDIRECT,
        "response_type": "code",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": "e2e-state",
    }
    page = client.get("/oauth/authorize", params=params, follow_redirects=False)
    assert page.status_code == 200

    login = client.post(
        "/login",
        data={"password": password, "original_url": page.request.url.raw_path.decode("ascii")},
        follow_redirects=False,
    )
    assert login.status_code == 302

    approved = client.get(login.headers["location"], follow_redirects=False)
    assert approved.status_code == 302
    assert approved.headers["location"].startswith(REDIRECT + "?code=")
    query = parse_qs(urlsplit(approved.headers["location"]).query)
    assert query["state"] == ["e2e-state"]

    r = client.post("/oauth/token", data=_token_form(query["code"][0], verifier, client_id))
    assert r.status_code == 200
    body = r.json()
    assert body["access_token"] == "test-api-key"
    assert body["token_type"] == "Bearer"
    assert body["scope"] == "mcp:tools:* mcp:resources:* mcp:prompts:*"
    assert r.headers["cache-control"] == "no-store"
    assert r.headers["pragma"] == "no-cache"


def test_static_client_with_secret_in_body(client, db):
    code, verifier = _issue_code(db, "static-client", STATIC_REDIRECT, scope="mcp:tools:*")
    r = client.post(
        "/oauth/token",
        data=_token_form(
            code, verifier, "static-client", STATIC_REDIRECT, client_secret="static-client-secret"
        ),
    )
    assert r.status_code == 200
    assert r.json()["scope"] == "mcp:tools:*"


def test_static_client_with_basic_auth(client, db):
    code, verifier = _issue_code(db, "static-client", STATIC_REDIRECT)
    r = client.post(
        "/oauth/token",
        data=_token_form(code, verifier, redirect_uri=STATIC_REDIRECT),
        headers=_basic("static-client", "static-client-secret"),
    )
    assert r.status_code == 200


def test_json_body_is_accepted(client, db):
    registered = _register(db)
    code, verifier = _issue_code(db, registered.client_id)
    r = client.post("/oauth/token", json=_token_form(code, verifier, registered.client_id))
    assert r.status_code == 200


def test_confidential_client_basic_auth(client, db):
    registered = _register(db, AUTH_METHOD_BASIC)
    code, verifier = _issue_code(db, registered.client_id)
    r = client.post(
        "/oauth/token",
        data=_token_form(code, verifier),
        headers=_basic(registered.client_id, registered.client_secret),
    )
    assert r.status_code == 200


def test_confidential_client_post_auth(client, db):
    registered = _register(db, AUTH_METHOD_POST)
    code, verifier = _issue_code(db, registered.client_id)
    r = client.post(
        "/oauth/token",
        data=_token_form(code, verifier, registered.client_id, client_secret=registered.client_secret),
    )
    assert r.status_code == 200


# --- client authentication ---


@pytest.mark.parametrize("secret", [None, "wrong-secret"])
def test_static_client_bad_secret(client, db, secret):
    code, verifier = _issue_code(db, "static-client", STATIC_REDIRECT)
    extra = {"client_secret": secret} if secret else {}
    r = client.post("/oauth/token", data=_token_form(code, verifier, "static-client", STATIC_REDIRECT, **extra))
    assert r.status_code == 400
    assert _error(r)[0] == "invalid_client"
    # Client authentication runs before the code is claimed
    assert AuthorizationCodeStore(db).fetch(code) is not None


def test_confidential_client_wrong_secret(client, db):
    registered = _register(db, AUTH_METHOD_BASIC)
    code, verifier = _issue_code(db, registered.client_id)
    r = client.post(
        "/oauth/token",
        data=_token_form(code, verifier),
        headers=_basic(registered.client_id, "not-the-secret"),
    )
    assert _error(r) == ("invalid_client", "Invalid client_id or client_secret")


def test_confidential_client_missing_secret(client, db):
    registered = _register(db, AUTH_METHOD_POST)
    code, verifier = _issue_code(db, registered.client_id)
    r = client.post("/oauth/token", data=_token_form(code, verifier, registered.client_id))
    assert _error(r) == ("invalid_client", "Missing or invalid client_secret")


def test_unknown_client_id(client, db):
    code, verifier = _issue_code(db, "static-client", STATIC_REDIRECT)
    r = client.post(
        "/oauth/token",
        data=_token_form(code, verifier, "mcp-client-unknown", STATIC_REDIRECT, client_secret="x"),
    )
    assert _error(r)[0] == "invalid_client"


# --- parameter validation ---


@pytest.mark.parametrize("grant_type", [None, "password", "refresh_token", "client_credentials"])
def test_unsupported_grant_type(client, grant_type):
    data = {"code": "c", "redirect_uri": REDIRECT, "code_verifier": "v" * 43}
    if grant_type:
        data["grant_type"] = grant_type
    r = client.post("/oauth/token", data=data)
    assert r.status_code == 400
    assert _error(r)[0] == "unsupported_grant_type"


@pytest.mark.parametrize("missing", ["code", "redirect_uri", "code_verifier"])
def test_missing_required_parameter(client, missing):
    data = _token_form("some-code", "v" * 43, "static-client")
    del data[missing]
    r = client.post("/oauth/token", data=data)
    assert _error(r) == ("invalid_request", f"Missing or invalid {missing}")


def test_repeated_form_parameter_is_rejected(client, db):
    registered = _register(db)
    code, verifier = _issue_code(db, registered.client_id)
    data = _token_form(code, verifier, registered.client_id)
    data["code"] = ["bogus-first-value", code]
    r = client.post("/oauth/token", data=data)
    assert r.status_code == 400
    assert _error(r) == ("invalid_request", "Missing or invalid code")
    # The valid code was never claimed
    assert AuthorizationCodeStore(db).fetch(code) is not None


def test_repeated_client_id_is_ignored(client, db):
    registered = _register(db)
    code, verifier = _issue_code(db, registered.client_id)
    data = _token_form(code, verifier)
    data["client_id"] = [registered.client_id, "mcp-client-other"]
    r = client.post("/oauth/token", data=data)
    # Dropped as repeated, so the client_id is taken from the code record
    assert r.status_code == 200


def test_non_string_json_parameter(client):
    r = client.post(
        "/oauth/token",
        json={"grant_type": "authorization_code", "code": 123, "redirect_uri": REDIRECT, "code_verifier": "v" * 43},
    )
    assert _error(r) == ("invalid_request", "Missing or invalid code")


@pytest.mark.parametrize("body", ["{not json", "[1, 2]"])
def test_malformed_json_body(client, body):
    r = client.post("/oauth/token", content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert _error(r)[0] == "invalid_request"


def test_bad_verifier_format_does_not_burn_code(client, db):
    registered = _register(db)
    code, verifier = _issue_code(db, registered.client_id)
    r = client.post("/oauth/token", data=_token_form(code, "short", registered.client_id))
    assert _error(r) == ("invalid_request", "Invalid code_verifier format")

    r = client.post("/oauth/token", data=_token_form(code, verifier, registered.client_id))
    assert r.status_code == 200


# --- code redemption ---


def test_unknown_code(client, db):
    registered = _register(db)
    _, verifier = _make_code_verifier_and_challenge()
    r = client.post("/oauth/token", data=_token_form("no-such-code", verifier, registered.client_id))
    assert _error(r) == ("invalid_grant", "Invalid or expired authorization code")


def test_expired_code(client, db):
    registered = _register(db)
    verifier, challenge = _make_code_verifier_and_challenge()
    now = datetime.now(timezone.utc)
    db.add(
        AuthorizationCode(
            code="stale-code",
            client_id=registered.client_id,
            redirect_uri=REDIRECT,
            code_challenge=challenge,
            code_challenge_method="S256",
            created_at=now - timedelta(minutes=20),
            expires_at=now - timedelta(minutes=10),
        )
    )
    db.commit()
    r = client.post("/oauth/token", data=_token_form("stale-code", verifier, registered.client_id))
    assert _error(r) == ("invalid_grant", "Invalid or expired authorization code")


def test_code_is_single_use(client, db):
    registered = _register(db)
    code, verifier = _issue_code(db, registered.client_id)
    data = _token_form(code, verifier, registered.client_id)
    assert client.post("/oauth/token", data=data).status_code == 200
    r = client.post("/oauth/token", data=data)
    assert _error(r) == ("invalid_grant", "Invalid or expired authorization code")


def test_redirect_uri_mismatch_burns_code(client, db):
    registered = _register(db)
    code, verifier = _issue_code(db, registered.client_id)
    r = client.post(
        "/oauth/token",
        data=_token_form(code, verifier, registered.client_id, redirect_uri="http://localhost:9999/other"),
    )
    assert _error(r) == ("invalid_grant", "redirect_uri mismatch")

    r = client.post("/oauth/token", data=_token_form(code, verifier, registered.client_id))
    assert _error(r) == ("invalid_grant", "Invalid or expired authorization code")


def test_client_id_mismatch(client, db):
    owner = _register(db)
    thief = _register(db)
    code, verifier = _issue_code(db, owner.client_id)
    r = client.post("/oauth/token", data=_token_form(code, verifier, thief.client_id))
    assert _error(r) == ("invalid_grant", "client_id mismatch")

    r = client.post("/oauth/token", data=_token_form(code, verifier, owner.client_id))
    assert _error(r)[0] == "invalid_grant"


def test_pkce_failure_is_audited_and_burns_code(client, db):
    registered = _register(db)
    code, verifier = _issue_code(db, registered.client_id)
    other_verifier, _ = _make_code_verifier_and_challenge()
    r = client.post("/oauth/token", data=_token_form(code, other_verifier, registered.client_id))
    assert _error(r) == ("invalid_grant", "PKCE verification failed")

    failure = db.query(AuditLog).filter(AuditLog.event == "token_failure").one()
    assert failure.client_id == registered.client_id
    assert failure.success is False
    assert failure.error_message == "PKCE verification failed"

    r = client.post("/oauth/token", data=_token_form(code, verifier, registered.client_id))
    assert _error(r)[0] == "invalid_grant"


def test_success_is_audited(client, db):
    registered = _register(db)
    code, verifier = _issue_code(db, registered.client_id)
    assert client.post("/oauth/token", data=_token_form(code, verifier, registered.client_id)).status_code == 200
    entry = db.query(AuditLog).filter(AuditLog.event == "token_exchange").one()
    assert entry.client_id == registered.client_id
    assert entry.success is True
    # Nothing secret ends up in the log
    assert code not in (entry.error_message or "")


# --- client_id taken from the code ---


def test_missing_client_id_uses_code_owner(client, db):
    registered = _register(db)
    code, verifier = _issue_code(db, registered.client_id)
    r = client.post("/oauth/token", data=_token_form(code, verifier))
    assert r.status_code == 200


def test_missing_client_id_static_client_still_needs_secret(client, db):
    code, verifier = _issue_code(db, "static-client", STATIC_REDIRECT)
    r = client.post("/oauth/token", data=_token_form(code, verifier, redirect_uri=STATIC_REDIRECT))
    assert _error(r) == ("invalid_client", "Missing or invalid client_secret")

    r = client.post(
        "/oauth/token",
        data=_token_form(code, verifier, redirect_uri=STATIC_REDIRECT, client_secret="static-client-secret"),
    )
    assert r.status_code == 200


def test_missing_client_id_with_unknown_code(client):
    _, verifier = _make_code_verifier_and_challenge()
    r = client.post("/oauth/token", data=_token_form("no-such-code", verifier))
    assert _error(r) == ("invalid_request", "Missing or invalid client_id")


def test_missing_client_id_rejected_when_fallback_disabled(settings):
    app = create_app(dataclasses.replace(settings, allow_client_id_from_code=False))
    db = app.state.session_factory()
    try:
        registered = _register(db)
        code, verifier = _issue_code(db, registered.client_id)
    finally:
        db.close()
    r = TestClient(app).post("/oauth/token", data=_token_form(code, verifier))
    assert _error(r) == ("invalid_request", "Missing or invalid client_id")
