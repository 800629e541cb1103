"""
PKCE (RFC 7636), S256 only.
code_challenge = BASE64URL(SHA256(ASCII(code_verifier))), no padding.
"""
import hashlib
import hmac
import re
from base64 import urlsafe_b64encode

MIN_LENGTH = 43
MAX_LENGTH = 128

_UNRESERVED = re.compile(r"[A-Za-z0-9\-._~]+")


def validate_format(value: str | None) -> bool:
    """43-128 characters from the RFC 7636 unreserved set."""
    if not value or not isinstance(value, str):
        return False
    if len(value) < MIN_LENGTH or len(value) > MAX_LENGTH:
        return False
    return _UNRESERVED.fullmatch(value) is not None


# Same rule for both sides of the proof
validate_code_challenge = validate_format
validate_code_verifier = validate_format


def compute_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify(code_verifier: str | None, code_challenge: str | None) -> bool:
    if not code_verifier or not code_challenge:
        return False
    try:
        computed = compute_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode("ascii"), code_challenge.encode("utf-8"))
