"""Pull inventory and history from the Artacom billing system.

The partner API is loosely typed: the same field shows up under several
names depending on the endpoint, and statuses are free text. Everything is
normalized into :class:`PartnerItem` before it touches the database.

A sync run is one-way (partner -> local) and keyed on serial number, so
running it twice in a row is a no-op the second time.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from sqlalchemy import and_, case, func
from sqlmodel import Session, select

from ftth_inventory.models import (
    HistoryAction,
    ItemDetail,
    ItemHistory,
    ItemStatus,
    Product,
    ProductCategory,
    Stock,
    SyncLog,
    User,
    utcnow,
)
from ftth_inventory.schemas import PartnerItem, RecordError
from ftth_inventory.services import audit, history

logger = logging.getLogger(__name__)

SYNC_TYPE = "ARTACOM_SYNC"
INVENTORY_PATH = "/api/inventory/inventory"
HISTORY_PATH = "/api/inventory/history/all"
TOKEN_PATH = "/api/auth/token"


class UpstreamError(Exception):
    pass


class ArtacomClient:
    """Thin httpx wrapper. Holds its own bearer token; one instance per app."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None

    @property
    def connected(self) -> bool:
        return self._token is not None

    def close(self) -> None:
        self._http.close()

    def authenticate(self) -> str:
        try:
            r = self._http.post(
                TOKEN_PATH,
                data={"username": self._username, "password": self._password},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Artacom auth request failed: {e}") from e

        if r.status_code >= 400:
            raise UpstreamError(f"Artacom auth rejected with HTTP {r.status_code}")

        try:
            body = r.json()
        except ValueError as e:
            raise UpstreamError("Artacom auth returned non-JSON body") from e
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise UpstreamError("Artacom auth response carried no access_token")

        expires_in = int(body.get("expires_in") or 3600)
        self._token = token
        self._token_expiry = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        logger.info("authenticated against %s", self.base_url)
        return token

    def _auth_header(self) -> dict[str, str]:
        expired = self._token_expiry is not None and datetime.now(timezone.utc) >= self._token_expiry
        if not self._token or expired:
            self.authenticate()
        return {"Authorization": f"Bearer {self._token}"}

    def _get(self, path: str) -> Any:
        try:
            r = self._http.get(path, headers=self._auth_header())
            if r.status_code in (401, 403):
                # 对方 token 失效：重新登录一次
                self.authenticate()
                r = self._http.get(path, headers=self._auth_header())
        except httpx.HTTPError as e:
            raise UpstreamError(f"GET {path} failed: {e}") from e

        if r.status_code >= 400:
            raise UpstreamError(f"GET {path} returned HTTP {r.status_code}")
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamError(f"GET {path} returned non-JSON body") from e

    def fetch_inventory(self) -> list[dict]:
        return unwrap(self._get(INVENTORY_PATH))

    def fetch_all_histories(self) -> list[dict]:
        return unwrap(self._get(HISTORY_PATH))


def unwrap(payload: Any) -> list[dict]:
    """Accept a bare list, ``{"data": ...}``, ``{"items": ...}`` (nested too) or a single object."""
    if isinstance(payload, list):
        return [p for p in payload if isinstance(p, dict)]
    if isinstance(payload, dict):
        for key in ("data", "items"):
            if key in payload:
                return unwrap(payload[key])
        return [payload]
    return []


def _first(record: dict, *keys: str) -> Any:
    for k in keys:
        v = record.get(k)
        if v not in (None, ""):
            return v
    return None


def _contains_any(text: str, words: tuple[str, ...]) -> bool:
    return any(w in text for w in words)


_STATUS_WORDS: list[tuple[ItemStatus, tuple[str, ...]]] = [
    (ItemStatus.GUDANG, ("GUDANG", "WAREHOUSE")),
    (ItemStatus.TERPASANG, ("TERPASANG", "INSTALLED", "OPERASIONAL", "RUSUN", "PERUMAHAN", "PINUS")),
    (ItemStatus.RUSAK, ("RUSAK", "DAMAGED", "REPAIR", "PERBAIKAN")),
    (ItemStatus.TEKNISI, ("TEKNISI", "TECHNICIAN", "LAPANGAN")),
]

_NOTE_WORDS: list[tuple[ItemStatus, tuple[str, ...]]] = [
    (ItemStatus.GUDANG, ("gudang", "warehouse", "ready", "tersedia")),
    (ItemStatus.TERPASANG, ("terpasang", "installed", "instal", "aktif")),
    (ItemStatus.RUSAK, ("rusak", "broken", "damage", "defect", "mati")),
    (ItemStatus.TEKNISI, ("teknisi", "technician", "maintenance", "perbaikan")),
]


def map_status(raw: Optional[str]) -> ItemStatus:
    if not raw:
        return ItemStatus.GUDANG
    upper = str(raw).upper()
    for status, words in _STATUS_WORDS:
        if _contains_any(upper, words):
            return status
    return ItemStatus.GUDANG


def derive_status_from_notes(notes: Optional[str]) -> Optional[ItemStatus]:
    if not notes:
        return None
    lower = notes.lower()
    for status, words in _NOTE_WORDS:
        if _contains_any(lower, words):
            return status
    return None


def infer_category(device_name: str) -> ProductCategory:
    lower = device_name.lower()
    if _contains_any(lower, ("kabel", "cable", "splitter", "patchcord", "pigtail")):
        return ProductCategory.PASSIVE
    if _contains_any(lower, ("splicer", "tangga", "tool", "tester", "multimeter")):
        return ProductCategory.TOOL
    return ProductCategory.ACTIVE


def parse_datetime(value: Any) -> Optional[datetime]:
    """ISO strings, ``YYYY-MM-DD`` or epoch milliseconds; naive UTC out."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_date(value: Any) -> Optional[date]:
    dt = parse_datetime(value)
    return dt.date() if dt else None


def _actor_name(record: dict) -> Optional[str]:
    user = record.get("user")
    if isinstance(user, dict):
        user = user.get("name")
    name = user or _first(record, "oleh", "updated_by", "username")
    return str(name) if name else None


def normalize_record(raw: dict) -> PartnerItem:
    sn = _first(raw, "Serial Number", "serial_number", "serialNumber", "sn")
    if sn is None or not str(sn).strip():
        raise ValueError("record has no serial number")

    notes = _first(raw, "Catatan", "notes", "catatan", "description")
    notes = str(notes) if notes is not None else None
    status = map_status(_first(raw, "Status", "status", "state"))
    status = derive_status_from_notes(notes) or status

    device = _first(
        raw, "Nama Perangkat", "Device Name", "device_name", "deviceName",
        "Model", "model", "Tipe Perangkat", "type", "device_type",
    )
    mac = _first(raw, "MAC Address", "mac_address", "macAddress", "mac")
    location = _first(raw, "Lokasi", "location", "lokasi", "warehouse")

    return PartnerItem(
        serial_number=str(sn).strip(),
        mac_address=str(mac).strip() if mac else None,
        device_name=str(device or "Unknown Device"),
        status=status,
        location=str(location) if location else None,
        notes=notes,
        purchase_date=parse_date(_first(raw, "Tanggal Pembelian", "purchase_date", "purchaseDate")),
        actor=_actor_name(raw),
    )


def map_history_action(raw_action: str) -> HistoryAction:
    lower = raw_action.lower()
    if "status" in lower:
        return HistoryAction.UPDATE_STATUS
    if _contains_any(lower, ("move", "pindah", "lokasi")):
        return HistoryAction.MOVE
    if _contains_any(lower, ("delete", "hapus")):
        return HistoryAction.DELETE
    if _contains_any(lower, ("update", "edit")):
        return HistoryAction.UPDATE_NOTES
    return HistoryAction.CREATE


def provenance(actor: Optional[str], **extra) -> dict:
    return {"artacomUser": actor or "Automated", **extra}


class ArtacomSync:
    """One sync run. Each record commits on its own so a bad record can't sink the batch."""

    def __init__(self, session: Session, client: ArtacomClient, warehouse_id: str, actor: User | None = None):
        self.session = session
        self.client = client
        self.warehouse_id = warehouse_id
        self.actor = actor
        self.created = 0
        self.updated = 0
        self.unchanged = 0
        self.histories_imported = 0
        self.errors: list[RecordError] = []

    def run(self) -> tuple[SyncLog, str]:
        log = SyncLog(type=SYNC_TYPE, status="IN_PROGRESS", details={"message": "Sync started"})
        self.session.add(log)
        self.session.commit()
        self.session.refresh(log)
        logger.info("artacom sync #%s started", log.id)

        try:
            records = self.client.fetch_inventory()
        except UpstreamError as e:
            logger.error("artacom sync #%s failed: %s", log.id, e)
            self._finish(log, "FAILED", f"Sync failed: {e}", error=str(e))
            raise

        for index, raw in enumerate(records):
            self._sync_one(index, raw)

        self.recount_stock()

        try:
            self.import_histories()
        except UpstreamError as e:
            logger.warning("artacom history import skipped: %s", e)
            self.errors.append(RecordError(index=-1, error=f"history import failed: {e}"))

        status = "PARTIAL" if self.errors else "SUCCESS"
        message = (
            f"Sync completed: {self.created} created, {self.updated} updated, "
            f"{self.unchanged} unchanged, {len(self.errors)} errors"
        )
        self._finish(log, status, message, total=len(records))
        logger.info("artacom sync #%s %s: %s", log.id, status, message)
        return log, message

    def _finish(self, log: SyncLog, status: str, message: str, error: str | None = None, total: int = 0) -> None:
        log = self.session.get(SyncLog, log.id)
        log.status = status
        log.error_message = error
        log.finished_at = utcnow()
        log.details = {
            "message": message,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "histories_imported": self.histories_imported,
            "errors": [e.model_dump() for e in self.errors],
            "total_processed": total,
        }
        self.session.add(log)
        audit.record(
            self.session,
            actor=self.actor,
            entity="SYNC",
            entity_id=log.id,
            action=SYNC_TYPE,
            after={"status": status, "created": self.created, "updated": self.updated},
            description=message,
        )
        self.session.commit()

    def _sync_one(self, index: int, raw: dict) -> None:
        sn = _first(raw, "Serial Number", "serial_number", "serialNumber", "sn")
        try:
            record = normalize_record(raw)
            outcome = self.upsert(record)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.warning("artacom record %s (%s) failed: %s", index, sn, e)
            self.errors.append(RecordError(index=index, serial_number=str(sn) if sn else None, error=str(e)))
            return

        if outcome == "created":
            self.created += 1
        elif outcome == "updated":
            self.updated += 1
        else:
            self.unchanged += 1

    def _product_for(self, device_name: str) -> Product:
        product = self.session.exec(select(Product).where(Product.name == device_name)).first()
        if product:
            return product
        prefix = "".join(ch for ch in device_name.upper() if ch.isalnum())[:6] or "DEV"
        count = self.session.exec(select(func.count()).select_from(Product)).one()
        product = Product(
            sku=f"ARTA-{prefix}-{count + 1:04d}",
            name=device_name,
            category=infer_category(device_name).value,
            unit="Pcs",
        )
        self.session.add(product)
        self.session.flush()
        return product

    def upsert(self, record: PartnerItem) -> str:
        item = self.session.exec(
            select(ItemDetail).where(ItemDetail.serial_number == record.serial_number)
        ).first()

        if item is None:
            product = self._product_for(record.device_name)
            item = ItemDetail(
                product_id=product.id,
                serial_number=record.serial_number,
                mac_address=record.mac_address,
                status=record.status.value,
                location=record.location,
                purchase_date=record.purchase_date,
                notes=record.notes,
            )
            self.session.add(item)
            self.session.flush()
            history.record(
                self.session,
                item,
                HistoryAction.CREATE,
                field="status",
                new=item.status,
                notes="Imported from Artacom",
                metadata=provenance(record.actor),
            )
            return "created"

        incoming = {
            "status": record.status.value,
            "mac_address": record.mac_address,
            "location": record.location,
            "notes": record.notes,
            "purchase_date": record.purchase_date,
        }
        changes: dict[str, list] = {}
        for field, new in incoming.items():
            # 空值 = 对方没填，不清空本地
            if new is None and field != "status":
                continue
            old = getattr(item, field)
            if history.as_text(old) != history.as_text(new):
                changes[field] = [history.as_text(old), history.as_text(new)]
                setattr(item, field, new)

        if not changes:
            return "unchanged"

        item.updated_at = utcnow()
        self.session.add(item)
        self.session.flush()

        if "status" in changes:
            action, field = HistoryAction.UPDATE_STATUS, "status"
        else:
            action, field = HistoryAction.SYNC_UPDATE, ",".join(changes)
        old, new = changes.get("status") or next(iter(changes.values()))
        history.record(
            self.session,
            item,
            action,
            field=field,
            old=old,
            new=new,
            notes="Updated from Artacom",
            metadata=provenance(record.actor, changes=changes),
        )
        return "updated"

    def recount_stock(self) -> None:
        """Warehouse stock of serialized products = number of their items in GUDANG."""
        counted = self.session.exec(
            select(
                ItemDetail.product_id,
                func.sum(
                    case(
                        (and_(ItemDetail.status == ItemStatus.GUDANG.value, ItemDetail.is_deleted == False), 1),  # noqa: E712
                        else_=0,
                    )
                ),
            ).group_by(ItemDetail.product_id)
        ).all()

        for product_id, in_warehouse in counted:
            in_warehouse = int(in_warehouse or 0)
            stock = self.session.exec(
                select(Stock).where(Stock.product_id == product_id, Stock.warehouse_id == self.warehouse_id)
            ).first()
            if stock and stock.quantity == in_warehouse:
                continue
            old_qty = stock.quantity if stock else 0
            if stock is None:
                stock = Stock(product_id=product_id, warehouse_id=self.warehouse_id, quantity=in_warehouse)
            else:
                stock.quantity = in_warehouse
                stock.updated_at = utcnow()
            self.session.add(stock)
            self.session.flush()
            audit.record(
                self.session,
                actor=self.actor,
                entity="STOCK",
                entity_id=stock.id,
                action="SYNC_RECOUNT",
                before={"product_id": product_id, "warehouse_id": self.warehouse_id, "quantity": old_qty},
                after={"product_id": product_id, "warehouse_id": self.warehouse_id, "quantity": in_warehouse},
            )
        self.session.commit()

    def import_histories(self) -> int:
        rows = self.client.fetch_all_histories()
        for raw in rows:
            sn = _first(raw, "serial_number", "sn", "Serial Number")
            if not sn:
                continue
            item = self.session.exec(
                select(ItemDetail).where(ItemDetail.serial_number == str(sn).strip())
            ).first()
            if item is None:
                continue

            raw_action = str(_first(raw, "action", "aksi") or "Imported")
            action = map_history_action(raw_action)
            dup = self.session.exec(
                select(ItemHistory).where(
                    ItemHistory.item_id == item.id,
                    ItemHistory.action == action.value,
                    ItemHistory.notes == raw_action,
                )
            ).first()
            if dup:
                continue

            row = history.record(
                self.session,
                item,
                action,
                notes=raw_action,
                metadata=provenance(_actor_name(raw), artacomData=raw),
            )
            created_at = parse_datetime(_first(raw, "timestamp", "created_at", "date", "waktu"))
            if created_at:
                row.created_at = created_at
            self.histories_imported += 1
        self.session.commit()
        return self.histories_imported


def sync_status(session: Session, client: ArtacomClient) -> dict:
    latest = session.exec(
        select(SyncLog).where(SyncLog.type == SYNC_TYPE).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
    ).first()
    return {
        "connected": client.connected,
        "last_sync": latest.created_at if latest else None,
        "last_sync_status": latest.status if latest else None,
        "api_endpoint": client.base_url,
    }


def sync_history(session: Session, limit: int = 10) -> list[SyncLog]:
    stmt = (
        select(SyncLog)
        .where(SyncLog.type == SYNC_TYPE)
        .order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
        .limit(limit)
    )
    return list(session.exec(stmt).all())
