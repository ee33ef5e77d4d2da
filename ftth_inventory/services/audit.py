"""Audit trail writes.

Rows are only ever added to the caller's session; the caller commits them
together with the business change, so a mutation and its audit row land or
fail as one unit.
"""
from typing import Any, Iterable, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from sqlmodel import Session, SQLModel

from ftth_inventory.models import AuditLog, User


def snapshot(obj: SQLModel | None, fields: Iterable[str] | None = None) -> Optional[dict[str, Any]]:
    """JSON-safe dict of a row, optionally limited to ``fields``. Never includes password hashes."""
    if obj is None:
        return None
    data = obj.model_dump(include=set(fields) if fields else None)
    data.pop("password_hash", None)
    return jsonable_encoder(data)


def client_info(request: Request | None) -> tuple[Optional[str], Optional[str]]:
    if request is None:
        return None, None
    host = request.client.host if request.client else None
    return host, request.headers.get("user-agent")


def describe(entity: str, action: str, before: dict | None, after: dict | None, actor_name: str) -> str:
    before = before or {}
    after = after or {}

    def pick(key: str, default: str = "?") -> str:
        return str(after.get(key) or before.get(key) or default)

    if entity == "ITEM":
        sn = pick("serial_number")
        if action == "CREATE":
            return f"Item [{sn}] added by {actor_name}"
        if action == "UPDATE_STATUS":
            return f"Item [{sn}] status {before.get('status', '?')} -> {after.get('status', '?')} by {actor_name}"
        if action == "MOVE":
            return f"Item [{sn}] moved by {actor_name}"
        if action == "DELETE":
            return f"Item [{sn}] deleted by {actor_name}"
        if action == "RESTORE":
            return f"Item [{sn}] restored by {actor_name}"
        return f"Item [{sn}] updated by {actor_name}"

    if entity == "STOCK":
        if action in ("STOCK_IN", "STOCK_OUT"):
            qty = abs(int(after.get("quantity", 0)) - int(before.get("quantity", 0)))
            verb = "in" if action == "STOCK_IN" else "out"
            return f"Stock {verb}: {qty} unit(s) of product #{pick('product_id')} at {pick('warehouse_id')} by {actor_name}"
        return f"Stock {action.lower()} for product #{pick('product_id')} by {actor_name}"

    if entity == "PRODUCT":
        if action == "CREATE":
            return f"Product \"{pick('name')}\" [SKU: {pick('sku')}] created by {actor_name}"
        if action == "DELETE":
            return f"Product \"{pick('name')}\" deleted by {actor_name}"
        return f"Product \"{pick('name')}\" updated by {actor_name}"

    if entity in ("USER", "ROLE"):
        label = pick("name")
        return f"{entity.title()} \"{label}\" {action.lower().replace('_', ' ')} by {actor_name}"

    return f"{entity} {action} by {actor_name}"


def record(
    session: Session,
    *,
    actor: User | None,
    entity: str,
    entity_id: Any,
    action: str,
    before: dict | None = None,
    after: dict | None = None,
    description: str | None = None,
    request: Request | None = None,
) -> AuditLog:
    ip, ua = client_info(request)
    actor_name = actor.name if actor else "system"
    log = AuditLog(
        user_id=actor.id if actor else None,
        action=action,
        entity=entity,
        entity_id=None if entity_id is None else str(entity_id),
        description=description or describe(entity, action, before, after, actor_name),
        old_values=before,
        new_values=after,
        ip_address=ip,
        user_agent=ua,
    )
    session.add(log)
    return log
