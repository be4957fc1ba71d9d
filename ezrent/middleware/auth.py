from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from ezrent.config import get_settings
from ezrent.schemas.schemas import ActorRole

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)

# Roles a token may carry; "system" is reserved for internal callers
TOKEN_ROLES = {ActorRole.customer, ActorRole.owner, ActorRole.admin}


@dataclass(frozen=True)
class Actor:
    id: str
    role: ActorRole


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.system)


def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    """Sign a JWT with the configured secret (HS256). Adds `exp` unless the caller set one."""
    claims = dict(data)
    minutes = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    claims.setdefault("exp", datetime.now(timezone.utc) + timedelta(minutes=minutes))
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    """Decode and validate the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_actor(token_data: dict = Depends(get_current_user)) -> Actor:
    """Extract the caller id and role from the token payload."""
    actor_id = token_data.get("sub")
    try:
        role = ActorRole(token_data.get("role", ""))
    except ValueError:
        role = None
    if not actor_id or role not in TOKEN_ROLES:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return Actor(id=str(actor_id), role=role)


async def get_current_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return actor
