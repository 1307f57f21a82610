"""Actor tokens.

Actors are authenticated upstream; docgate only verifies the signed
bearer token and reads the actor context (user id, roles, groups) from
its claims.
"""

from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from docgate.core.config import get_settings
from docgate.core.policy.rules import Actor, normalize_string, normalize_string_list

settings = get_settings()


def create_actor_token(actor: Actor, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT carrying the actor context."""
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode = {
        "sub": actor.user_id,
        "exp": expire,
        "roles": actor.roles,
        "group_ids": actor.group_ids,
        "group_account_ids": actor.group_account_ids,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_actor_token(token: str) -> Optional[Actor]:
    """Decode and validate an actor token. Returns None if invalid."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None

    user_id = normalize_string(payload.get("sub"))
    if user_id is None or payload.get("type") != "access":
        return None

    return Actor(
        user_id=user_id,
        roles=normalize_string_list(payload.get("roles")),
        group_ids=normalize_string_list(payload.get("group_ids")),
        group_account_ids=normalize_string_list(payload.get("group_account_ids")),
    )
