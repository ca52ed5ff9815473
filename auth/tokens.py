"""
auth/tokens.py -- Password hashing, strength policy, session JWTs and
recovery-token utilities.

Security design decisions:
  Passwords: bcrypt used directly. Its cost factor makes brute-force of
       low-entropy secrets expensive. checkpw() compares in constant time.
       _DUMMY_HASH lets the login path run bcrypt even for unknown emails so
       response time does not reveal which addresses are registered [C1].

  Session assertion: python-jose with HS256. The token carries user id,
       email, display name, role name and the role's permission snapshot.
       Verification returns None on any failure -- the route layer turns
       that into a 401.

  Recovery tokens: secrets.token_hex(32) gives 256 bits of entropy. Only
       HMAC-SHA256(SECRET_KEY, raw_token) is stored, so a leaked database
       does not hand out live reset links. The HMAC is deterministic, which
       keeps lookup a single indexed equality match.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import ValidationError, WeakPassword
from auth.models import SessionAssertion, User
from core.config import get_settings

logger = logging.getLogger("labaccess.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt accepts at most 72 bytes of input. check_password_strength()
    rejects longer secrets before they reach this function.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


# Computed once at module load so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("labaccess_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison whose result is discarded [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Strength policy
# ---------------------------------------------------------------------------

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")

BCRYPT_MAX_BYTES = 72


def check_password_strength(plain: str, min_length: int | None = None) -> None:
    """Raise WeakPassword unless plain meets the length and character-class rules.

    Required: minimum length, a lower-case letter, an upper-case letter, a
    digit and a character that is neither letter nor digit. Secrets longer
    than bcrypt's input limit raise ValidationError instead.
    """
    if len(plain.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must not exceed {BCRYPT_MAX_BYTES} bytes.")
    min_length = min_length or _settings.password_min_length
    if (
        len(plain) < min_length
        or not _LOWER.search(plain)
        or not _UPPER.search(plain)
        or not _DIGIT.search(plain)
        or not _SPECIAL.search(plain)
    ):
        raise WeakPassword()


# ---------------------------------------------------------------------------
# Session assertion (JWT encode / decode)
# ---------------------------------------------------------------------------


def build_session(user: User, expire_seconds: int = 0) -> SessionAssertion:
    """Snapshot user identity and role permissions into a SessionAssertion.

    user.role must already be resolved by the store; the snapshot is taken
    from it as-is.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expires = datetime.now(timezone.utc) + timedelta(seconds=duration)
    return SessionAssertion(
        id=user.id,
        email=user.email,
        name=user.name,
        role_name=user.role_name,
        permissions=tuple(user.permissions),
        expires_at=int(expires.timestamp()),
    )


def encode_session(session: SessionAssertion) -> str:
    """Sign a SessionAssertion into a JWT string."""
    payload = {
        "sub": str(session.id),
        "user_id": session.id,
        "email": session.email,
        "name": session.name,
        "role": session.role_name,
        "permissions": list(session.permissions),
        "exp": session.expires_at,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session(token: str) -> SessionAssertion | None:
    """Verify a JWT and return its SessionAssertion, or None on any failure.

    Expiry is checked by jose during decode. Returning None rather than
    raising keeps callers simple: any bad token is just "not authenticated".
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    try:
        return SessionAssertion(
            id=int(payload["user_id"]),
            email=payload["email"],
            name=payload["name"],
            role_name=payload["role"],
            permissions=tuple(payload.get("permissions") or ()),
            expires_at=int(payload["exp"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Recovery tokens
# ---------------------------------------------------------------------------


def generate_recovery_token() -> str:
    """Return a new opaque recovery token (64 hex chars, 256 bits)."""
    return secrets.token_hex(32)


def hash_recovery_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
