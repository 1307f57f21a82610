from typing import Generator
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from docgate.db.session import SessionLocal
from docgate.core.policy.rules import Actor
from docgate.core.security import decode_actor_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)

ADMIN_ROLE = "admin"


def get_db() -> Generator:
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """Get the calling actor from the bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception

    actor = decode_actor_token(token)
    if actor is None:
        raise credentials_exception
    return actor


def require_role(role: str):
    """Dependency factory requiring the actor to hold ``role``."""

    def checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.has_role(role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role required: {role}",
            )
        return actor

    return checker


require_admin = require_role(ADMIN_ROLE)
