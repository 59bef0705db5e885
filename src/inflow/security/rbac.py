from __future__ import annotations

"""Role-based permissions for the artifact routes."""
from enum import Enum
from typing import Callable, Set

from fastapi import Depends, HTTPException, status

from .auth import User, get_current_user


class Permission(str, Enum):
    ARTIFACT_READ = "artifact:read"
    ARTIFACT_WRITE = "artifact:write"
    ARTIFACT_APPROVE = "artifact:approve"
    CHAT = "chat:send"
    ADMIN = "admin:*"


ROLE_PERMISSIONS = {
    "viewer": {Permission.ARTIFACT_READ},
    "contributor": {Permission.ARTIFACT_READ, Permission.ARTIFACT_WRITE, Permission.ARTIFACT_APPROVE, Permission.CHAT},
    "admin": {Permission.ADMIN},
}


def _user_permissions(user: User) -> Set[Permission]:
    perms: Set[Permission] = set()
    for role in user.roles:
        perms |= ROLE_PERMISSIONS.get(role, set())
    return perms


def is_authorized(user: User, required: Permission) -> bool:
    perms = _user_permissions(user)
    if Permission.ADMIN in perms:
        return True
    return required in perms


def require_permission(required: Permission) -> Callable[[User], User]:
    """FastAPI dependency to enforce a single permission on a route."""

    def dependency(user: User = Depends(get_current_user)) -> User:
        if not is_authorized(user, required):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return dependency
