import logging
from dataclasses import dataclass, field

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import Session

from ftth_inventory.db import get_session
from ftth_inventory.error import _auth_401, _forbidden_403
from ftth_inventory.models import Role, User
from ftth_inventory.permissions import Permission
from ftth_inventory.security import InvalidOrExpired, user_id_from

logger = logging.getLogger(__name__)

# auto_error=False：缺 token 时返回统一的 401
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


@dataclass
class AuthContext:
    user: User
    role: Role
    permissions: frozenset[str] = field(default_factory=frozenset)

    @property
    def role_name(self) -> str:
        return self.role.name

    def has(self, perm: Permission | str) -> bool:
        return _value(perm) in self.permissions


def _value(perm: Permission | str) -> str:
    return perm.value if isinstance(perm, Permission) else perm


def load_context(session: Session, user_id: int) -> AuthContext:
    """Read user and role fresh from the store. No caching: revocations apply on the next request."""
    user = session.get(User, user_id)
    if not user:
        raise _auth_401("USER_NOT_FOUND", "User no longer exists, please log in again")
    if not user.is_active:
        raise _auth_401("USER_DISABLED", "Account is disabled")
    role = session.get(Role, user.role_id)
    if not role:
        raise _auth_401("USER_NOT_FOUND", "User has no role, please log in again")
    return AuthContext(user=user, role=role, permissions=frozenset(role.permissions or []))


def require_user(
    token: str | None = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> AuthContext:
    if not token:
        raise _auth_401("NOT_AUTHENTICATED", "Access token required")

    try:
        user_id = user_id_from(token)
    except InvalidOrExpired:
        raise _auth_401("INVALID_TOKEN", "Invalid or expired token")

    return load_context(session, user_id)


def require_role(*names: str):
    allowed = set(names)

    def dependency(ctx: AuthContext = Depends(require_user)) -> AuthContext:
        if ctx.role_name not in allowed:
            logger.info("role %s denied, needs one of %s", ctx.role_name, sorted(allowed))
            raise _forbidden_403(
                f"Requires role: {', '.join(names)}", required_roles=list(names)
            )
        return ctx

    return dependency


def require_permission(perm: Permission):
    def dependency(ctx: AuthContext = Depends(require_user)) -> AuthContext:
        if not ctx.has(perm):
            logger.info("user %s missing %s", ctx.user.id, perm.value)
            raise _forbidden_403(
                f"Insufficient permissions. Missing: {perm.value}", missing=[perm.value]
            )
        return ctx

    return dependency


def require_any_permission(*perms: Permission):
    wanted = [_value(p) for p in perms]

    def dependency(ctx: AuthContext = Depends(require_user)) -> AuthContext:
        if not any(p in ctx.permissions for p in wanted):
            logger.info("user %s has none of %s", ctx.user.id, wanted)
            raise _forbidden_403(
                f"Insufficient permissions. Requires one of: {', '.join(wanted)}",
                missing=wanted,
            )
        return ctx

    return dependency


def require_all_permissions(*perms: Permission):
    wanted = [_value(p) for p in perms]

    def dependency(ctx: AuthContext = Depends(require_user)) -> AuthContext:
        missing = [p for p in wanted if p not in ctx.permissions]
        if missing:
            logger.info("user %s missing %s", ctx.user.id, missing)
            raise _forbidden_403(
                f"Insufficient permissions. Missing: {', '.join(missing)}", missing=missing
            )
        return ctx

    return dependency
