from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import bcrypt
import jwt


class AuthError(RuntimeError):
    pass


class AuthConfigError(AuthError):
    pass


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """The only identity type the services see, whatever the token source."""

    user_id: str
    role: str = "user"
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_ROLES = {"user", "vip", "admin"}


def _normalize_role(role: Any) -> str:
    normalized = str(getattr(role, "value", role) or "user").strip().lower()
    if normalized not in _ROLES:
        return "user"
    return normalized


def is_bcrypt_hash(value: str) -> bool:
    raw = str(value or "").strip()
    return any(raw.startswith(prefix) for prefix in _BCRYPT_PREFIXES)


def hash_password_bcrypt(password: str, *, rounds: int = 12) -> str:
    raw = str(password or "")
    if not raw:
        raise AuthConfigError("password cannot be empty")
    hashed = bcrypt.hashpw(raw.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password_hash(password: str, password_hash: str) -> bool:
    secret = str(password_hash or "").strip()
    candidate = str(password or "")
    if not secret or not is_bcrypt_hash(secret):
        return False
    try:
        return bool(bcrypt.checkpw(candidate.encode("utf-8"), secret.encode("utf-8")))
    except ValueError:
        return False


def issue_access_token(principal: AuthenticatedPrincipal, secret: str, ttl_seconds: int = 3600) -> str:
    if not secret:
        raise AuthConfigError("AUTH_TOKEN_SECRET is missing")
    now = int(time.time())
    payload = {
        "sub": principal.user_id,
        "role": _normalize_role(principal.role),
        "email": principal.email,
        "iat": now,
        "exp": now + max(60, int(ttl_seconds)),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_access_token(token: str, secret: str) -> AuthenticatedPrincipal:
    if not secret:
        raise AuthConfigError("AUTH_TOKEN_SECRET is missing")
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("invalid token") from exc

    # Older session tokens carry the user id under `userId` or `id`.
    user_id = ""
    for key in ("sub", "userId", "id"):
        user_id = str(payload.get(key) or "").strip()
        if user_id:
            break
    if not user_id:
        raise AuthError("invalid token subject")
    email = str(payload.get("email") or "").strip() or None
    return AuthenticatedPrincipal(user_id=user_id, role=_normalize_role(payload.get("role")), email=email)


def extract_bearer_token(authorization: str | None) -> str:
    raw = str(authorization or "").strip()
    if not raw:
        raise AuthError("missing Authorization header")
    prefix = "Bearer "
    if not raw.startswith(prefix):
        raise AuthError("invalid Authorization header")
    token = raw[len(prefix):].strip()
    if not token:
        raise AuthError("empty bearer token")
    return token


def extract_request_token(
    authorization: str | None,
    cookies: Mapping[str, str] | None = None,
    cookie_name: str = "backendToken",
) -> str:
    """Bearer header first, then the session cookie."""
    if str(authorization or "").strip():
        return extract_bearer_token(authorization)
    token = str((cookies or {}).get(cookie_name) or "").strip()
    if not token:
        raise AuthError("missing credentials")
    return token
