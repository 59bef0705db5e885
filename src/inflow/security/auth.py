from __future__ import annotations

"""Authentication utilities: JWT handling and the user registry.

This module provides:
- the ``User`` context model (with billing tier)
- an in-memory user registry keyed by user id
- JWT encode/decode helpers
- FastAPI dependencies to get the current user

A token is rejected with 401 when it is missing, is not shaped like a JWT,
fails signature or expiry checks, or names a user that no longer exists.

Env vars:
- JWT_SECRET (required in prod; default for dev)
- JWT_EXPIRES_MIN (default 60)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Literal, Optional

import logging
import os
import uuid

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel


logger = logging.getLogger("inflow.auth")
bearer_scheme = HTTPBearer(auto_error=False)

Tier = Literal["free", "pro"]


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = _get_env("JWT_SECRET", "dev-secret-change-me")
        expires = int(os.getenv("JWT_EXPIRES_MIN", "60"))
        return JwtConfig(secret=secret, expires_min=expires)


class User(BaseModel):
    id: str
    email: str
    name: str
    roles: list[str]
    tier: Tier = "free"


# In-memory users (user id -> {email, name, roles, tier})
USERS: Dict[str, Dict[str, object]] = {}


def register_user(
    email: str,
    name: str,
    roles: Optional[list[str]] = None,
    tier: Tier = "free",
    user_id: Optional[str] = None,
) -> User:
    email_l = email.lower()
    if any(rec.get("email") == email_l for rec in USERS.values()):
        raise ValueError("User already exists")
    uid = user_id or str(uuid.uuid4())
    effective_roles = roles or ["contributor"]
    USERS[uid] = {"email": email_l, "name": name, "roles": effective_roles, "tier": tier}
    return User(id=uid, email=email_l, name=name, roles=effective_roles, tier=tier)


def get_user(user_id: str) -> Optional[User]:
    rec = USERS.get(user_id)
    if rec is None:
        return None
    return User(
        id=user_id,
        email=str(rec.get("email", "")),
        name=str(rec.get("name", "")),
        roles=list(rec.get("roles", [])),  # type: ignore[arg-type]
        tier=rec.get("tier", "free"),  # type: ignore[arg-type]
    )


def reset_users() -> None:
    USERS.clear()


def create_access_token(user: User, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=cfg.expires_min)
    payload = {
        "sub": user.id,
        "email": user.email,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def is_jwt_shaped(token: str) -> bool:
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> Dict[str, object]:
    cfg = cfg or JwtConfig.from_env()
    try:
        return jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def authenticate_token(token: str, cfg: Optional[JwtConfig] = None) -> User:
    if not token or not is_jwt_shaped(token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token format")
    claims = decode_token(token, cfg)
    user = get_user(str(claims.get("sub", "")))
    if user is None:
        logger.info("auth_unknown_user", extra={"sub": claims.get("sub")})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> User:
    """Resolve the current user from the bearer token."""
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authorization header")
    return authenticate_token(creds.credentials)
