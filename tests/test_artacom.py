from sqlmodel import Session, select

from ftth_inventory.models import ItemDetail, ItemHistory, ItemStatus, Product, ProductCategory, Stock, SyncLog
from ftth_inventory.services.artacom import (
    ArtacomSync,
    derive_status_from_notes,
    infer_category,
    map_status,
    normalize_record,
    parse_datetime,
    unwrap,
)


def _seed_item(client, h):
    r = client.post("/api/products", json={"sku": "ONT-001", "name": "ONT ZTE F609"}, headers=h)
    r = client.post("/api/items", json={"product_id": r.json()["id"], "serial_number": "ZTE20240001"}, headers=h)
    return r.json()


def _rows(engine, model, *where):
    with Session(engine) as session:
        return session.exec(select(model).where(*where)).all()


def test_sync_updates_known_serial_without_duplicating(client, engine, partner, admin_h):
    item = _seed_item(client, admin_h)
    partner.inventory = [
        {"Serial Number": "ZTE20240001", "Nama Perangkat": "ONT ZTE F609", "Status": "Terpasang", "user": {"name": "Budi"}},
    ]

    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.status_code == 200
    result = r.json()
    assert result["status"] == "SUCCESS"
    assert (result["created"], result["updated"], result["unchanged"]) == (0, 1, 0)
    assert result["errors"] == []

    items = _rows(engine, ItemDetail, ItemDetail.serial_number == "ZTE20240001")
    assert len(items) == 1
    assert items[0].status == ItemStatus.TERPASANG.value

    synced = _rows(engine, ItemHistory, ItemHistory.item_id == item["id"], ItemHistory.action != "CREATE")
    assert len(synced) == 1
    assert synced[0].action == "UPDATE_STATUS"
    assert (synced[0].old_value, synced[0].new_value) == ("GUDANG", "TERPASANG")
    assert synced[0].meta["artacomUser"] == "Budi"

    # 第二次：没有变化
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert (r.json()["updated"], r.json()["unchanged"]) == (0, 1)
    assert len(_rows(engine, ItemHistory, ItemHistory.item_id == item["id"])) == 2


def test_sync_creates_items_products_and_recounts_stock(client, engine, partner, admin_h):
    partner.inventory = {
        "items": [
            {"serial_number": "HW-0001", "device_name": "ONT Huawei HG8245H", "status": "Gudang", "mac_address": "00:11:22:33:44:55"},
            {"serial_number": "HW-0002", "device_name": "ONT Huawei HG8245H", "status": "Gudang"},
            {"serial_number": "HW-0003", "device_name": "ONT Huawei HG8245H", "status": "di lapangan", "catatan": "dibawa teknisi"},
            {"sn": "SP-0001", "device_name": "Splitter 1:8", "status": "Gudang"},
        ]
    }
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.json()["created"] == 4

    products = {p.name: p for p in _rows(engine, Product)}
    assert products["ONT Huawei HG8245H"].sku.startswith("ARTA-")
    assert products["ONT Huawei HG8245H"].category == ProductCategory.ACTIVE.value
    assert products["Splitter 1:8"].category == ProductCategory.PASSIVE.value

    statuses = {i.serial_number: i.status for i in _rows(engine, ItemDetail)}
    assert statuses["HW-0003"] == "TEKNISI"

    ont_stock = _rows(engine, Stock, Stock.product_id == products["ONT Huawei HG8245H"].id)
    assert [(s.warehouse_id, s.quantity) for s in ont_stock] == [("WH-001", 2)]

    created = _rows(engine, ItemHistory, ItemHistory.action == "CREATE")
    assert len(created) == 4
    assert all(h.meta["artacomUser"] == "Automated" for h in created)


def test_bad_record_makes_run_partial(client, engine, partner, admin_h):
    partner.inventory = [
        {"serial_number": "HW-0001", "device_name": "ONT Huawei HG8245H"},
        {"device_name": "ONT tanpa serial"},
    ]
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.status_code == 200
    result = r.json()
    assert result["status"] == "PARTIAL"
    assert result["created"] == 1
    assert [e["index"] for e in result["errors"]] == [1]

    log = _rows(engine, SyncLog)[0]
    assert log.status == "PARTIAL"
    assert log.details["created"] == 1


def test_upstream_down_fails_the_run(client, engine, partner, admin_h):
    partner.inventory_down = True
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.status_code == 502
    assert r.json()["detail"]["code"] == "UPSTREAM_ERROR"

    r = client.get("/api/artacom/history", headers=admin_h)
    assert [(h["status"], h["error_message"] is not None) for h in r.json()] == [("FAILED", True)]

    r = client.get("/api/artacom/inventory", headers=admin_h)
    assert r.status_code == 502


def test_history_import_is_deduplicated(client, engine, partner, admin_h):
    item = _seed_item(client, admin_h)
    partner.histories = [
        {"serial_number": "ZTE20240001", "action": "Pindah lokasi ke POP Cikarang", "user": "Sari", "timestamp": "2024-03-01T08:00:00Z"},
        {"serial_number": "UNKNOWN-1", "action": "Status changed"},
    ]
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.json()["histories_imported"] == 1
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.json()["histories_imported"] == 0

    moves = _rows(engine, ItemHistory, ItemHistory.item_id == item["id"], ItemHistory.action == "MOVE")
    assert len(moves) == 1
    assert moves[0].meta["artacomUser"] == "Sari"
    assert moves[0].created_at.year == 2024


def test_history_endpoint_failure_is_partial(client, partner, admin_h):
    partner.inventory = [{"serial_number": "HW-0001", "device_name": "ONT Huawei HG8245H"}]
    partner.history_down = True
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.status_code == 200
    assert r.json()["status"] == "PARTIAL"
    assert r.json()["created"] == 1


def test_status_and_inventory_preview(client, partner, admin_h, gudang_h):
    r = client.get("/api/artacom/status", headers=gudang_h)
    assert r.json()["connected"] is False
    assert r.json()["last_sync"] is None

    partner.inventory = [{"Serial Number": "HW-0001", "Model": "ONT Huawei", "Status": "RUSAK"}, {"foo": "bar"}]
    r = client.get("/api/artacom/inventory", headers=gudang_h)
    assert r.status_code == 200
    assert [(i["serial_number"], i["status"]) for i in r.json()] == [("HW-0001", "RUSAK")]

    client.post("/api/artacom/sync", headers=admin_h)
    r = client.get("/api/artacom/status", headers=gudang_h)
    assert r.json()["connected"] is True
    assert r.json()["last_sync_status"] == "PARTIAL"
    assert partner.token_requests == 1


def test_sync_requires_permission(client, gudang_h):
    r = client.post("/api/artacom/sync", headers=gudang_h)
    assert r.status_code == 403
    assert r.json()["detail"]["missing"] == ["artacom.sync"]


def test_normalization_helpers():
    assert unwrap([{"a": 1}, "x"]) == [{"a": 1}]
    assert unwrap({"data": [{"a": 1}]}) == [{"a": 1}]
    assert unwrap({"serial_number": "S"}) == [{"serial_number": "S"}]

    assert map_status("Terpasang di pelanggan") == ItemStatus.TERPASANG
    assert map_status("rusak") == ItemStatus.RUSAK
    assert map_status("???") == ItemStatus.GUDANG
    assert map_status(None) == ItemStatus.GUDANG
    assert derive_status_from_notes("unit mati total") == ItemStatus.RUSAK
    assert derive_status_from_notes("") is None

    assert infer_category("Kabel drop core") == ProductCategory.PASSIVE
    assert infer_category("Fusion splicer Fujikura") == ProductCategory.TOOL
    assert infer_category("ONT ZTE") == ProductCategory.ACTIVE

    rec = normalize_record({"serialNumber": " ZTE1 ", "Status": "Gudang", "Catatan": "sudah terpasang", "purchaseDate": "2024-02-10"})
    assert rec.serial_number == "ZTE1"
    assert rec.status == ItemStatus.TERPASANG
    assert rec.device_name == "Unknown Device"
    assert rec.purchase_date.isoformat() == "2024-02-10"


def test_out_of_range_date_only_fails_its_record(client, engine, partner, admin_h):
    partner.inventory = [
        {"serial_number": "OK-1", "device_name": "ONT Huawei HG8245H"},
        {"serial_number": "BAD-1", "device_name": "ONT Huawei HG8245H", "purchase_date": 10**20},
        {"serial_number": "BAD-2", "device_name": "ONT Huawei HG8245H", "purchase_date": {"when": "?"}},
    ]
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.status_code == 200
    assert r.json()["status"] == "SUCCESS"
    assert r.json()["created"] == 3

    bad = _rows(engine, ItemDetail, ItemDetail.serial_number == "BAD-1")[0]
    assert bad.purchase_date is None


def test_unexpected_record_failure_is_collected(client, engine, partner, admin_h, monkeypatch):
    original = ArtacomSync.upsert

    def upsert(self, record):
        if record.serial_number == "BOOM-1":
            raise RuntimeError("boom")
        return original(self, record)

    monkeypatch.setattr(ArtacomSync, "upsert", upsert)
    partner.inventory = [
        {"serial_number": "BOOM-1", "device_name": "ONT Huawei HG8245H"},
        {"serial_number": "OK-1", "device_name": "ONT Huawei HG8245H"},
    ]
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.status_code == 200
    result = r.json()
    assert result["status"] == "PARTIAL"
    assert result["created"] == 1
    assert [(e["index"], e["serial_number"]) for e in result["errors"]] == [(0, "BOOM-1")]
    assert [s.status for s in _rows(engine, SyncLog)] == ["PARTIAL"]


def test_non_json_auth_reply_fails_the_run(client, engine, partner, admin_h):
    partner.token_html = True
    r = client.post("/api/artacom/sync", headers=admin_h)
    assert r.status_code == 502
    assert r.json()["detail"]["code"] == "UPSTREAM_ERROR"
    assert [(s.status, s.finished_at is not None) for s in _rows(engine, SyncLog)] == [("FAILED", True)]

    r = client.get("/api/artacom/inventory", headers=admin_h)
    assert r.status_code == 502


def test_nested_wrappers_are_unwrapped():
    assert unwrap({"data": {"items": [{"a": 1}]}}) == [{"a": 1}]
    assert unwrap({"data": None}) == []
    assert parse_datetime(10**20) is None
    assert parse_datetime(1709280000000).year == 2024
