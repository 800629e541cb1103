"""
bcrypt hashing for the login password and stored client secrets.
Run `python -m password_oauth.passwords <password>` to produce OAUTH_PASSWORD_HASH.
"""
import sys

import bcrypt


def _encode(plain: str) -> bytes:
    # Bcrypt has a 72-byte limit
    raw = plain.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return raw


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash (e.g. misconfigured OAUTH_PASSWORD_HASH)
        return False


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: python -m password_oauth.passwords <password>", file=sys.stderr)
        sys.exit(2)
    print(hash_password(sys.argv[1]))
