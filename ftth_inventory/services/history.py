from datetime import date, datetime
from typing import Any, Optional

from fastapi import Request
from sqlmodel import Session

from ftth_inventory.models import HistoryAction, ItemDetail, ItemHistory, User
from ftth_inventory.services.audit import client_info

# 字段 -> 变更时写入的 history action
FIELD_ACTIONS: dict[str, HistoryAction] = {
    "serial_number": HistoryAction.UPDATE_SN,
    "mac_address": HistoryAction.UPDATE_MAC,
    "status": HistoryAction.UPDATE_STATUS,
    "location": HistoryAction.UPDATE_LOCATION,
    "notes": HistoryAction.UPDATE_NOTES,
    "purchase_date": HistoryAction.UPDATE_PURCHASE_DATE,
}


def as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def record(
    session: Session,
    item: ItemDetail,
    action: HistoryAction | str,
    *,
    field: str | None = None,
    old: Any = None,
    new: Any = None,
    notes: str | None = None,
    actor: User | None = None,
    metadata: dict | None = None,
    request: Request | None = None,
) -> ItemHistory:
    ip, ua = client_info(request)
    row = ItemHistory(
        item_id=item.id,
        action=action.value if isinstance(action, HistoryAction) else action,
        field=field,
        old_value=as_text(old),
        new_value=as_text(new),
        notes=notes,
        user_id=actor.id if actor else None,
        meta=metadata,
        ip_address=ip,
        user_agent=ua,
    )
    session.add(row)
    return row


def record_field_changes(
    session: Session,
    item: ItemDetail,
    before: dict[str, Any],
    *,
    actor: User | None = None,
    metadata: dict | None = None,
    request: Request | None = None,
) -> list[ItemHistory]:
    """One history row for every tracked field whose value differs from ``before``."""
    rows = []
    for field, action in FIELD_ACTIONS.items():
        old = before.get(field)
        new = getattr(item, field)
        if as_text(old) == as_text(new):
            continue
        rows.append(
            record(
                session,
                item,
                action,
                field=field,
                old=old,
                new=new,
                notes=f"{field} changed from {as_text(old)} to {as_text(new)}",
                actor=actor,
                metadata=metadata,
                request=request,
            )
        )
    return rows
