import time

import security
from tests.conftest import add_product, add_user, bearer


def _login(client, notifier, email="buyer@example.com"):
    assert client.post("/api/auth/request-otp", json={"email": email}).status_code == 200
    resp = client.post("/api/auth/verify-otp", json={"email": email, "code": notifier.last_code})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['token']}"}, resp.json()["user"]


def test_root(client):
    assert client.get("/").json()["status"] == "ok"


def test_health_check_reports_database(client):
    assert client.get("/test").json() == {"backend": "running", "database": "connected"}


def test_otp_login_and_me(client, notifier):
    headers, user = _login(client, notifier)

    assert user["email"] == "buyer@example.com"
    assert user["is_email_verified"] is True
    me = client.get("/api/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["user"]["id"] == user["id"]


def test_request_otp_errors_are_json(client):
    resp = client.post("/api/auth/request-otp", json={})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Email or phone number is required"}


def test_request_otp_cooldown(client):
    client.post("/api/auth/request-otp", json={"phone": "555-123-4567"})
    resp = client.post("/api/auth/request-otp", json={"phone": "(555) 123 4567"})

    assert resp.status_code == 429
    assert resp.json()["retry_after"] == 60
    assert resp.headers["Retry-After"] == "60"
    assert "error" in resp.json()


def test_verify_otp_bad_code(client):
    resp = client.post("/api/auth/verify-otp", json={"email": "x@example.com", "code": "123456"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid or expired OTP"}


def test_refresh_token(client, notifier):
    headers, _ = _login(client, notifier)
    token = headers["Authorization"].split(" ", 1)[1]

    resp = client.post("/api/auth/refresh-token", json={"token": token})
    assert resp.status_code == 200
    assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {resp.json()['token']}"}).status_code == 200

    assert client.post("/api/auth/refresh-token", json={"token": "junk"}).status_code == 401
    assert client.post("/api/auth/refresh-token", json={}).status_code == 400


def test_protected_routes_need_token(client):
    resp = client.get("/api/orders/my-orders")
    assert resp.status_code == 401
    assert resp.json() == {"error": "No token provided"}
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_order_lifecycle_over_http(client, notifier, app_db):
    add_product(app_db, "p1", price=10.0)
    headers, _ = _login(client, notifier)
    admin = add_user(app_db, role="ADMIN")

    created = client.post(
        "/api/orders",
        json={"items": [{"id": "p1", "price": 10.0, "quantity": 2}], "subtotal": 20.0, "tax": 2.0, "total": 22.0},
        headers=headers,
    )
    assert created.status_code == 201
    order = created.json()["order"]
    assert order["status"] == "PENDING"
    download_id = order["download_ids"][0]

    early = client.post(f"/api/orders/download/{download_id}", headers=headers)
    assert early.status_code == 404
    assert early.json() == {"error": "Download not found or expired"}

    forbidden = client.patch(f"/api/orders/{order['id']}/status", json={"status": "COMPLETED"}, headers=headers)
    assert forbidden.status_code == 403

    done = client.patch(f"/api/orders/{order['id']}/status", json={"status": "COMPLETED"}, headers=bearer(admin))
    assert done.status_code == 200
    assert done.json()["order"]["completed_at"] is not None

    redeemed = client.post(f"/api/orders/download/{download_id}", headers=headers)
    assert redeemed.status_code == 200
    assert redeemed.json()["download"]["order_number"] == order["order_number"]

    listing = client.get("/api/orders/my-orders?page=1&limit=5", headers=headers).json()
    assert listing["pagination"]["total"] == 1
    assert listing["orders"][0]["status"] == "COMPLETED"

    detail = client.get(f"/api/orders/{order['id']}", headers=headers)
    assert detail.json()["order"]["order_number"] == order["order_number"]

    stranger = add_user(app_db)
    assert client.get(f"/api/orders/{order['id']}", headers=bearer(stranger)).status_code == 404

    stats = client.get("/api/orders/stats/overview", headers=bearer(admin))
    assert stats.status_code == 200
    assert stats.json()["stats"]["completed_orders"] == 1
    assert client.get("/api/orders/stats/overview", headers=headers).status_code == 403


def test_create_order_validation(client, notifier, app_db):
    add_product(app_db, "p1", price=10.0)
    headers, _ = _login(client, notifier)

    zero_qty = client.post(
        "/api/orders",
        json={"items": [{"id": "p1", "quantity": 0}], "subtotal": 0, "tax": 0, "total": 0},
        headers=headers,
    )
    assert zero_qty.status_code == 400
    assert "error" in zero_qty.json()

    mismatch = client.post(
        "/api/orders",
        json={"items": [{"id": "p1", "quantity": 1}], "subtotal": 10.0, "tax": 1.0, "total": 5.0},
        headers=headers,
    )
    assert mismatch.status_code == 400

    missing = client.post("/api/orders", json={"items": [{"id": "p1", "quantity": 1}]}, headers=headers)
    assert missing.status_code == 400


def test_invalid_status_and_illegal_transition(client, notifier, app_db):
    add_product(app_db, "p1", price=10.0)
    headers, _ = _login(client, notifier)
    admin = bearer(add_user(app_db, role="SUPERADMIN"))
    order = client.post(
        "/api/orders",
        json={"items": [{"id": "p1", "quantity": 1}], "subtotal": 10.0, "tax": 0, "total": 10.0},
        headers=headers,
    ).json()["order"]

    assert client.patch(f"/api/orders/{order['id']}/status", json={"status": "SHIPPED"}, headers=admin).status_code == 400
    assert client.patch(f"/api/orders/{order['id']}/status", json={"status": "CANCELLED"}, headers=admin).status_code == 200
    back = client.patch(f"/api/orders/{order['id']}/status", json={"status": "COMPLETED"}, headers=admin)
    assert back.status_code == 409
    assert client.post(f"/api/orders/download/{order['download_ids'][0]}", headers=headers).status_code == 404


def test_catalog_endpoints(client, app_db):
    admin = bearer(add_user(app_db, role="ADMIN"))
    created = client.post(
        "/api/admin/products",
        json={"title": "Physics Guide", "price": 4.5, "category": "science", "file_url": "/files/phys.pdf"},
        headers=admin,
    )
    assert created.status_code == 201
    product_id = created.json()["id"]

    assert client.get(f"/api/products/{product_id}").json()["title"] == "Physics Guide"
    assert [p["id"] for p in client.get("/api/products?category=science").json()] == [product_id]
    assert client.get("/api/products/missing").status_code == 404


def test_admin_management(client, app_db):
    superadmin = bearer(add_user(app_db, role="SUPERADMIN"))

    created = client.post(
        "/api/admin/create-admin",
        json={"email": "staff@example.com", "password": "longenough", "permissions": {"can_manage_orders": True}},
        headers=superadmin,
    )
    assert created.status_code == 201
    admin_id = created.json()["admin"]["id"]

    dup = client.post(
        "/api/admin/create-admin",
        json={"email": "staff@example.com", "password": "longenough"},
        headers=superadmin,
    )
    assert dup.status_code == 409

    admins = client.get("/api/admin/admins", headers=superadmin).json()
    assert admins[0]["permissions"]["can_manage_orders"] is True
    assert admins[0]["permissions"]["can_view_analytics"] is False

    updated = client.put(
        f"/api/admin/admins/{admin_id}/permissions",
        json={"can_view_analytics": True},
        headers=superadmin,
    )
    assert updated.status_code == 200
    assert updated.json()["can_view_analytics"] is True
    assert updated.json()["can_manage_orders"] is True

    unknown = client.put(f"/api/admin/admins/{admin_id}/permissions", json={"can_fly": True}, headers=superadmin)
    assert unknown.status_code == 400

    login = client.post("/api/auth/login", data={"username": "staff@example.com", "password": "longenough"})
    assert login.status_code == 200
    staff = {"Authorization": f"Bearer {login.json()['access_token']}"}
    assert client.get("/api/admin/orders", headers=staff).status_code == 200
    assert client.get("/api/admin/admins", headers=staff).status_code == 403

    bad_login = client.post("/api/auth/login", data={"username": "staff@example.com", "password": "wrong-pass"})
    assert bad_login.status_code == 401

    assert client.delete(f"/api/admin/admins/{admin_id}", headers=superadmin).status_code == 200
    assert client.delete(f"/api/admin/admins/{admin_id}", headers=superadmin).status_code == 404
    assert client.get("/api/admin/orders", headers=staff).status_code == 401


def test_admin_token_is_short_lived(client, app_db):
    superadmin = add_user(app_db, role="SUPERADMIN")
    app_db["user"].update_one(
        {"_id": superadmin["_id"]},
        {"$set": {"password_hash": security.get_password_hash("rootpass1")}},
    )

    token = client.post("/api/auth/login", data={"username": superadmin["email"], "password": "rootpass1"}).json()["access_token"]

    claims = security.decode_token(token)
    issued_for = claims["exp"] - time.time()
    assert 0 < issued_for <= 15 * 60


def test_admin_reads_own_permissions(client, app_db):
    superadmin = bearer(add_user(app_db, role="SUPERADMIN"))
    staff = add_user(app_db, role="ADMIN")

    defaults = client.get("/api/admin/permissions", headers=bearer(staff))
    assert defaults.status_code == 200
    assert set(defaults.json().values()) == {False}

    client.put(f"/api/admin/admins/{staff['_id']}/permissions", json={"can_manage_exams": True}, headers=superadmin)
    granted = client.get("/api/admin/permissions", headers=bearer(staff)).json()
    assert granted["can_manage_exams"] is True
    assert granted["can_manage_orders"] is False

    assert client.get("/api/admin/permissions", headers=bearer(add_user(app_db))).status_code == 403


def test_category_endpoints(client, app_db):
    admin = bearer(add_user(app_db, role="ADMIN"))

    created = client.post("/api/admin/categories", json={"name": "math"}, headers=admin)
    assert created.status_code == 201
    category_id = created.json()["category"]["id"]

    dup = client.post("/api/admin/categories", json={"name": "math"}, headers=admin)
    assert dup.status_code == 409
    assert dup.json() == {"error": "Category already exists"}

    assert [c["name"] for c in client.get("/api/categories").json()["categories"]] == ["math"]
    assert client.put(f"/api/admin/categories/{category_id}", json={"name": "algebra"}, headers=admin).status_code == 200
    assert client.delete(f"/api/admin/categories/{category_id}", headers=admin).status_code == 200
    assert client.delete(f"/api/admin/categories/{category_id}", headers=admin).status_code == 404


def test_exam_endpoints(client, app_db):
    admin = bearer(add_user(app_db, role="ADMIN"))
    body = {
        "title": "Physics Quiz",
        "duration": 20,
        "passing_marks": 1,
        "questions": [{"question": "Unit of force?", "options": ["N", "J"], "correct_answer": "N"}],
    }

    created = client.post("/api/admin/exams", json=body, headers=admin)
    assert created.status_code == 201
    exam_id = created.json()["exam"]["id"]

    published = client.patch(f"/api/admin/exams/{exam_id}/status", json={"status": "PUBLISHED"}, headers=admin)
    assert published.json()["exam"]["status"] == "PUBLISHED"
    assert client.patch(f"/api/admin/exams/{exam_id}/status", json={"status": "LIVE"}, headers=admin).status_code == 400

    assert client.get(f"/api/admin/exams/{exam_id}", headers=admin).json()["exam"]["questions"][0]["order"] == 1
    assert client.post("/api/admin/exams", json={**body, "questions": []}, headers=admin).status_code == 400
    assert client.get("/api/admin/exams", headers=bearer(add_user(app_db))).status_code == 403
    assert client.delete(f"/api/admin/exams/{exam_id}", headers=admin).status_code == 200
