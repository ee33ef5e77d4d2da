import io

from openpyxl import load_workbook
from sqlmodel import Session, select

from conftest import user_id
from ftth_inventory.models import AuditLog, ItemHistory


def _setup(client, h):
    r = client.post("/api/products", json={"sku": "ONT-001", "name": "ONT ZTE F609"}, headers=h)
    product_id = r.json()["id"]
    r = client.post("/api/items", json={"product_id": product_id, "serial_number": "ZTE20240001", "mac_address": "AA:BB:CC:00:00:01"}, headers=h)
    assert r.status_code == 201, r.text
    return product_id, r.json()


def _history(engine, item_id):
    with Session(engine) as session:
        return session.exec(select(ItemHistory).where(ItemHistory.item_id == item_id).order_by(ItemHistory.id)).all()


def test_create_defaults_to_gudang_with_create_history(client, engine, admin_h):
    _, item = _setup(client, admin_h)
    assert item["status"] == "GUDANG"
    assert item["is_deleted"] is False

    rows = _history(engine, item["id"])
    assert [(h.action, h.field, h.new_value) for h in rows] == [("CREATE", "status", "GUDANG")]


def test_status_transition_writes_exactly_one_history_row(client, engine, admin_h):
    _, item = _setup(client, admin_h)

    r = client.put(f"/api/items/{item['id']}/status", json={"status": "TERPASANG", "notes": "Pelanggan Blok C"}, headers=admin_h)
    assert r.status_code == 200
    assert r.json()["status"] == "TERPASANG"

    rows = [h for h in _history(engine, item["id"]) if h.action == "UPDATE_STATUS"]
    assert len(rows) == 1
    assert rows[0].field == "status"
    assert rows[0].old_value == "GUDANG"
    assert rows[0].new_value == "TERPASANG"
    assert rows[0].notes == "Pelanggan Blok C"
    assert rows[0].user_id == user_id(engine, "admin")

    with Session(engine) as session:
        log = session.exec(select(AuditLog).where(AuditLog.entity == "ITEM", AuditLog.action == "UPDATE_STATUS")).one()
    assert log.old_values["status"] == "GUDANG"
    assert log.new_values["status"] == "TERPASANG"


def test_same_status_is_rejected(client, engine, admin_h):
    _, item = _setup(client, admin_h)
    r = client.put(f"/api/items/{item['id']}/status", json={"status": "GUDANG"}, headers=admin_h)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "NO_CHANGE"
    assert len(_history(engine, item["id"])) == 1


def test_unknown_status_is_a_validation_error(client, admin_h):
    _, item = _setup(client, admin_h)
    r = client.put(f"/api/items/{item['id']}/status", json={"status": "HILANG"}, headers=admin_h)
    assert r.status_code == 422


def test_duplicate_serial_and_mac(client, admin_h):
    product_id, _ = _setup(client, admin_h)
    r = client.post("/api/items", json={"product_id": product_id, "serial_number": "ZTE20240001"}, headers=admin_h)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "SERIAL_NUMBER_EXISTS"

    r = client.post("/api/items", json={"product_id": product_id, "serial_number": "ZTE20240002", "mac_address": "AA:BB:CC:00:00:01"}, headers=admin_h)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "MAC_ADDRESS_EXISTS"

    r = client.post("/api/items", json={"product_id": 999, "serial_number": "ZTE20240003"}, headers=admin_h)
    assert r.status_code == 404


def test_update_writes_one_row_per_changed_field(client, engine, admin_h):
    _, item = _setup(client, admin_h)
    body = {"location": "Gudang Utama Rak 3", "notes": "Unit baru", "purchase_date": "2024-05-01", "serial_number": "ZTE20240001"}
    r = client.put(f"/api/items/{item['id']}", json=body, headers=admin_h)
    assert r.status_code == 200
    assert r.json()["purchase_date"] == "2024-05-01"

    rows = _history(engine, item["id"])[1:]
    assert sorted(h.action for h in rows) == ["UPDATE_LOCATION", "UPDATE_NOTES", "UPDATE_PURCHASE_DATE"]
    dates = [h for h in rows if h.action == "UPDATE_PURCHASE_DATE"]
    assert dates[0].old_value is None
    assert dates[0].new_value == "2024-05-01"

    r = client.put(f"/api/items/{item['id']}", json={"notes": "Unit baru"}, headers=admin_h)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "NO_CHANGE"


def test_move_item(client, engine, admin_h):
    _, item = _setup(client, admin_h)
    r = client.post(
        f"/api/items/{item['id']}/move",
        json={"to_status": "TEKNISI", "to_location": "Tim Instalasi A", "notes": "dibawa teknisi"},
        headers=admin_h,
    )
    assert r.status_code == 201
    row = r.json()
    assert row["action"] == "MOVE"
    assert row["field"] == "status"
    assert (row["old_value"], row["new_value"]) == ("GUDANG", "TEKNISI")
    assert row["metadata"]["to_location"] == "Tim Instalasi A"

    r = client.post(f"/api/items/{item['id']}/move", json={"to_location": "Tim Instalasi B"}, headers=admin_h)
    assert r.json()["field"] == "location"

    r = client.post(f"/api/items/{item['id']}/move", json={"to_location": "Tim Instalasi B"}, headers=admin_h)
    assert r.status_code == 400

    r = client.get(f"/api/items/{item['id']}/movements", headers=admin_h)
    assert [m["new_value"] for m in r.json()] == ["Tim Instalasi B", "TEKNISI"]

    r = client.get(f"/api/items/{item['id']}", headers=admin_h)
    assert r.json()["status"] == "TEKNISI"
    assert r.json()["location"] == "Tim Instalasi B"


def test_soft_delete_and_restore(client, engine, admin_h, gudang_h):
    _, item = _setup(client, admin_h)

    r = client.delete(f"/api/items/{item['id']}", headers=gudang_h)
    assert r.status_code == 403
    assert r.json()["detail"]["missing"] == ["items.delete"]

    r = client.delete(f"/api/items/{item['id']}", headers=admin_h)
    assert r.status_code == 200
    assert r.json()["is_deleted"] is True

    assert client.get(f"/api/items/{item['id']}", headers=admin_h).status_code == 404
    assert client.get("/api/items/scan/ZTE20240001", headers=admin_h).status_code == 404
    assert client.get("/api/items", headers=admin_h).json() == []
    assert len(client.get("/api/items", params={"include_deleted": True}, headers=admin_h).json()) == 1

    r = client.post(f"/api/items/{item['id']}/restore", headers=admin_h)
    assert r.status_code == 200
    assert r.json()["is_deleted"] is False
    assert client.get("/api/items/scan/ZTE20240001", headers=admin_h).json()["id"] == item["id"]

    actions = [h.action for h in _history(engine, item["id"])]
    assert actions == ["CREATE", "DELETE", "RESTORE"]


def test_list_filters(client, admin_h):
    product_id, _ = _setup(client, admin_h)
    client.post("/api/items", json={"product_id": product_id, "serial_number": "ZTE20240002", "status": "RUSAK"}, headers=admin_h)

    r = client.get("/api/items", params={"status": "RUSAK"}, headers=admin_h)
    assert [i["serial_number"] for i in r.json()] == ["ZTE20240002"]
    r = client.get("/api/items", params={"search": "AA:BB"}, headers=admin_h)
    assert [i["serial_number"] for i in r.json()] == ["ZTE20240001"]
    r = client.get("/api/items", params={"product_id": product_id, "limit": 1}, headers=admin_h)
    assert len(r.json()) == 1


def test_bulk_import_keeps_good_rows(client, admin_h):
    product_id, _ = _setup(client, admin_h)
    body = {
        "items": [
            {"product_id": product_id, "serial_number": "ZTE20240010"},
            {"product_id": product_id, "serial_number": "ZTE20240001"},
            {"product_id": 999, "serial_number": "ZTE20240011"},
            {"product_id": product_id, "serial_number": "ZTE20240012", "status": "TEKNISI"},
        ]
    }
    r = client.post("/api/items/import", json=body, headers=admin_h)
    assert r.status_code == 200
    result = r.json()
    assert result["created"] == 2
    assert result["failed"] == 2
    assert [(e["index"], e["serial_number"]) for e in result["errors"]] == [(1, "ZTE20240001"), (2, "ZTE20240011")]

    serials = {i["serial_number"] for i in client.get("/api/items", headers=admin_h).json()}
    assert serials == {"ZTE20240001", "ZTE20240010", "ZTE20240012"}


def test_item_history_endpoints(client, admin_h, teknisi_h):
    _, item = _setup(client, admin_h)
    client.put(f"/api/items/{item['id']}/status", json={"status": "TEKNISI"}, headers=teknisi_h)
    client.put(f"/api/items/{item['id']}/status", json={"status": "TERPASANG"}, headers=teknisi_h)

    r = client.get(f"/api/histories/items/{item['id']}/history", params={"limit": 2}, headers=teknisi_h)
    assert r.status_code == 200
    page = r.json()
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    assert [h["new_value"] for h in page["data"]] == ["TERPASANG", "TEKNISI"]

    r = client.get(f"/api/histories/items/{item['id']}/history", params={"action": "CREATE"}, headers=teknisi_h)
    assert r.json()["pagination"]["total"] == 1

    r = client.get("/api/histories/histories", params={"action": "UPDATE_STATUS"}, headers=teknisi_h)
    assert r.json()["pagination"]["total"] == 2

    assert client.get("/api/histories/items/999/history", headers=teknisi_h).status_code == 404


def test_export_xlsx(client, admin_h):
    _setup(client, admin_h)
    r = client.get("/api/items/export.xlsx", headers=admin_h)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/vnd.openxmlformats")
    assert "attachment" in r.headers["content-disposition"]

    ws = load_workbook(io.BytesIO(r.content)).active
    rows = list(ws.iter_rows(values_only=True))
    assert rows[0][:4] == ("ID", "SKU", "Product", "Serial Number")
    assert rows[1][1] == "ONT-001"
    assert rows[1][3] == "ZTE20240001"
