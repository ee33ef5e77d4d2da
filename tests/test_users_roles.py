from sqlmodel import Session, select

from conftest import role_id, user_id
from ftth_inventory.models import AuditLog


def _new_user(client, h, engine, email="budi@ftth.local", role="TEKNISI"):
    body = {"name": "Budi Santoso", "email": email, "password": "budi1234", "role_id": role_id(engine, role)}
    return client.post("/api/users", json=body, headers=h)


def test_create_and_list_users(client, engine, admin_h):
    r = _new_user(client, admin_h, engine, email="Budi@FTTH.local")
    assert r.status_code == 201
    user = r.json()
    assert user["email"] == "budi@ftth.local"
    assert user["role"]["name"] == "TEKNISI"
    assert user["is_active"] is True

    r = client.get("/api/users", params={"limit": 2}, headers=admin_h)
    assert r.status_code == 200
    assert r.json()["pagination"] == {"page": 1, "limit": 2, "total": 4, "pages": 2}
    assert len(r.json()["data"]) == 2

    r = client.get("/api/users", params={"search": "budi"}, headers=admin_h)
    assert [u["email"] for u in r.json()["data"]] == ["budi@ftth.local"]

    r = client.get("/api/users", params={"role_id": role_id(engine, "TEKNISI")}, headers=admin_h)
    assert r.json()["pagination"]["total"] == 2

    r = client.post("/api/auth/login", json={"email": "budi@ftth.local", "password": "budi1234"})
    assert r.status_code == 200

    with Session(engine) as session:
        log = session.exec(select(AuditLog).where(AuditLog.entity == "USER", AuditLog.action == "CREATE")).one()
    assert "password_hash" not in log.new_values


def test_create_user_validation(client, engine, admin_h):
    r = _new_user(client, admin_h, engine, email="admin@ftth.local")
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "EMAIL_EXISTS"

    body = {"name": "Sari", "email": "sari@ftth.local", "password": "123", "role_id": role_id(engine, "GUDANG")}
    r = client.post("/api/users", json=body, headers=admin_h)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "PASSWORD_TOO_SHORT"

    body = {"name": "Sari", "email": "sari@ftth.local", "password": "sari1234", "role_id": 999}
    assert client.post("/api/users", json=body, headers=admin_h).status_code == 404


def test_update_user_role(client, engine, admin_h):
    budi = _new_user(client, admin_h, engine).json()
    r = client.put(f"/api/users/{budi['id']}", json={"role_id": role_id(engine, "GUDANG"), "name": "Budi S."}, headers=admin_h)
    assert r.status_code == 200
    assert r.json()["role"]["name"] == "GUDANG"
    assert r.json()["name"] == "Budi S."

    r = client.put(f"/api/users/{budi['id']}", json={"email": "gudang@ftth.local"}, headers=admin_h)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "EMAIL_EXISTS"


def test_delete_disables_user(client, engine, admin_h):
    budi = _new_user(client, admin_h, engine).json()
    r = client.delete(f"/api/users/{budi['id']}", headers=admin_h)
    assert r.status_code == 200

    r = client.get(f"/api/users/{budi['id']}", headers=admin_h)
    assert r.json()["is_active"] is False

    r = client.post("/api/auth/login", json={"email": "budi@ftth.local", "password": "budi1234"})
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "USER_DISABLED"


def test_cannot_delete_or_disable_self(client, engine, admin_h):
    admin = user_id(engine, "admin")
    r = client.delete(f"/api/users/{admin}", headers=admin_h)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "CANNOT_DELETE_SELF"

    r = client.put(f"/api/users/{admin}", json={"is_active": False}, headers=admin_h)
    assert r.status_code == 400


def test_reset_password(client, engine, admin_h):
    budi = _new_user(client, admin_h, engine).json()
    r = client.post(f"/api/users/{budi['id']}/reset-password", json={"new_password": "baru5678"}, headers=admin_h)
    assert r.status_code == 200
    r = client.post("/api/auth/login", json={"email": "budi@ftth.local", "password": "baru5678"})
    assert r.status_code == 200


def test_users_need_users_manage(client, gudang_h):
    r = client.get("/api/users", headers=gudang_h)
    assert r.status_code == 403
    assert r.json()["detail"]["missing"] == ["users.manage"]


def test_role_crud(client, engine, admin_h):
    r = client.post(
        "/api/roles",
        json={"name": "supervisor", "permissions": ["inventory.view", "activity_log.view", "inventory.view"]},
        headers=admin_h,
    )
    assert r.status_code == 201
    role = r.json()
    assert role["name"] == "SUPERVISOR"
    assert role["permissions"] == ["inventory.view", "activity_log.view"]

    r = client.post("/api/roles", json={"name": "Supervisor"}, headers=admin_h)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "ROLE_EXISTS"

    r = client.put(f"/api/roles/{role['id']}", json={"permissions": ["inventory.view", "inventory.teleport"]}, headers=admin_h)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "UNKNOWN_PERMISSION"
    assert client.get(f"/api/roles/{role['id']}", headers=admin_h).json()["permissions"] == ["inventory.view", "activity_log.view"]

    r = client.patch(f"/api/roles/{role['id']}/permissions", json={"permissions": ["products.view"]}, headers=admin_h)
    assert r.status_code == 200
    assert r.json()["permissions"] == ["products.view"]

    names = [x["name"] for x in client.get("/api/roles", headers=admin_h).json()]
    assert names == ["ADMIN", "GUDANG", "SUPERVISOR", "TEKNISI"]

    r = client.delete(f"/api/roles/{role['id']}", headers=admin_h)
    assert r.status_code == 200
    assert client.get(f"/api/roles/{role['id']}", headers=admin_h).status_code == 404

    with Session(engine) as session:
        actions = session.exec(select(AuditLog.action).where(AuditLog.entity == "ROLE").order_by(AuditLog.id)).all()
    assert actions == ["CREATE", "UPDATE_PERMISSIONS", "DELETE"]


def test_role_in_use_cannot_be_deleted(client, engine, admin_h):
    r = client.delete(f"/api/roles/{role_id(engine, 'TEKNISI')}", headers=admin_h)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "ROLE_IN_USE"
    assert r.json()["detail"]["users"] == 1
