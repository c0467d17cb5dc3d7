"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user_role import UserRole
from services.identity import generate_stable_anon_id
from services.session_token import verify_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


@dataclass
class CallerIdentity:
    """Ledger owner for a request: a session user or an anonymous cookie."""

    user_id: str
    authenticated: bool
    anon_cookie: Optional[str] = None


def _context_from_credentials(credentials: HTTPAuthorizationCredentials) -> AuthContext:
    if credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    try:
        claims = verify_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return _context_from_credentials(credentials)


async def get_optional_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Like get_auth_context, but anonymous requests resolve to None."""
    if not credentials:
        return None
    return _context_from_credentials(credentials)


def resolve_caller(request: Request, auth: Optional[AuthContext]) -> Optional[CallerIdentity]:
    """Prefer the session user; fall back to the anonymous cookie."""
    if auth is not None:
        return CallerIdentity(user_id=auth.user_id, authenticated=True)

    anon_cookie = (request.cookies.get(settings.ANON_COOKIE_NAME) or "").strip()
    if not anon_cookie:
        return None
    return CallerIdentity(
        user_id=generate_stable_anon_id(anon_cookie),
        authenticated=False,
        anon_cookie=anon_cookie,
    )


async def user_has_role(user_id: str, role: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role == role).limit(1)
    )
    return result.scalar_one_or_none() is not None
