"""Permission catalog and the default role set.

Roles store their permissions as plain strings so that the role-management
screens can send whatever the user ticked. Routes, on the other hand, only
ever reference members of :class:`Permission`, so a typo in a route table
fails at import time instead of silently denying access.
"""
import logging
from enum import Enum
from typing import Iterable

from sqlmodel import Session, select

from ftth_inventory.models import Role

logger = logging.getLogger(__name__)

# 增删权限时 +1
CATALOG_VERSION = 1


class Permission(str, Enum):
    PRODUCTS_VIEW = "products.view"
    PRODUCTS_CREATE = "products.create"
    PRODUCTS_UPDATE = "products.update"
    PRODUCTS_DELETE = "products.delete"

    INVENTORY_VIEW = "inventory.view"
    INVENTORY_STOCK_IN = "inventory.stock_in"
    INVENTORY_STOCK_OUT = "inventory.stock_out"
    INVENTORY_AUDIT = "inventory.audit"
    ITEMS_DELETE = "items.delete"

    USERS_MANAGE = "users.manage"

    ROLES_VIEW = "roles.view"
    ROLES_CREATE = "roles.create"
    ROLES_UPDATE = "roles.update"
    ROLES_DELETE = "roles.delete"

    ACTIVITY_LOG_VIEW = "activity_log.view"
    SETTINGS_VIEW = "settings.view"
    ARTACOM_SYNC = "artacom.sync"


ALL_PERMISSIONS: list[str] = [p.value for p in Permission]

DEFAULT_ROLES: dict[str, list[str]] = {
    "ADMIN": ALL_PERMISSIONS,
    "GUDANG": [
        Permission.PRODUCTS_VIEW.value,
        Permission.INVENTORY_VIEW.value,
        Permission.INVENTORY_STOCK_IN.value,
        Permission.INVENTORY_STOCK_OUT.value,
        Permission.INVENTORY_AUDIT.value,
        Permission.ACTIVITY_LOG_VIEW.value,
    ],
    "TEKNISI": [
        Permission.INVENTORY_VIEW.value,
        Permission.INVENTORY_AUDIT.value,
    ],
}


def unknown_permissions(perms: Iterable[str]) -> list[str]:
    return [p for p in perms if p not in ALL_PERMISSIONS]


def normalize_permissions(perms: Iterable[str]) -> list[str]:
    """Strip, drop blanks and duplicates, keep first-seen order."""
    seen: list[str] = []
    for p in perms:
        p = (p or "").strip()
        if p and p not in seen:
            seen.append(p)
    return seen


def seed_default_roles(session: Session) -> list[Role]:
    """Create missing default roles. Safe to run on every start.

    Existing roles keep their edited permissions, except ADMIN which always
    holds the whole catalog.
    """
    roles = []
    for name, perms in DEFAULT_ROLES.items():
        role = session.exec(select(Role).where(Role.name == name)).first()
        if role is None:
            role = Role(name=name, permissions=list(perms))
            logger.info("created role %s", name)
        elif name == "ADMIN":
            role.permissions = normalize_permissions([*role.permissions, *perms])
        else:
            continue
        session.add(role)
        roles.append(role)
    session.commit()
    for role in roles:
        session.refresh(role)
    return roles
