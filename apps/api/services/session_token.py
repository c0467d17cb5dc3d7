"""Bearer session tokens identifying signed-in RIA Hunter users."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "ria_session"


@dataclass(frozen=True)
class SessionToken:
    token: str
    expires_at: int


@dataclass(frozen=True)
class SessionClaims:
    """Verified identity carried by a session token."""

    user_id: str
    email: Optional[str]
    expires_at: int


def issue_session_token(
    user_id: str,
    email: Optional[str] = None,
    ttl_hours: Optional[int] = None,
) -> SessionToken:
    subject = str(user_id or "").strip()
    if not subject:
        raise ValueError("Session token requires a user id.")

    issued_at = datetime.now(timezone.utc)
    hours = max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = int((issued_at + timedelta(hours=hours)).timestamp())
    claims = {
        "sub": subject,
        "type": SESSION_TOKEN_TYPE,
        "iss": settings.JWT_ISSUER,
        "iat": int(issued_at.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email

    return SessionToken(
        token=jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        expires_at=expires_at,
    )


def verify_session_token(token: str) -> SessionClaims:
    """Check signature, expiry, issuer and token type; raise ValueError otherwise."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        user_id=user_id,
        email=payload.get("email") or None,
        expires_at=int(payload["exp"]),
    )
