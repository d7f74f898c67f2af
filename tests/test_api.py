import pytest
from bson.objectid import ObjectId
from fastapi.testclient import TestClient

import config
import main
from security import create_access_token


@pytest.fixture
def client(db, notifier):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def auth(user_id, role="CUSTOMER"):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


def test_health(client):
    assert client.get("/health").json()["status"] == "success"
    assert client.get("/").status_code == 200


def test_register_login_and_profile(client):
    resp = client.post("/api/v1/auth/register", json={
        "email": "new@example.com", "password": "longenough", "name": "New"})
    assert resp.status_code == 201
    assert "token" in resp.cookies
    token = resp.json()["data"]["token"]

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["data"]["email"] == "new@example.com"

    dup = client.post("/api/v1/auth/register", json={"email": "new@example.com", "password": "longenough"})
    assert dup.status_code == 409
    assert dup.json() == {"detail": "User already exists"}

    bad = client.post("/api/v1/auth/login", json={"email": "new@example.com", "password": "wrong-one"})
    assert bad.status_code == 401


def test_cookie_authenticates(client, make_user):
    user = make_user(email="cookie@example.com")
    cookie = {"Cookie": f"token={create_access_token(user, 'CUSTOMER')}"}
    assert client.get("/api/v1/auth/me", headers=cookie).json()["data"]["email"] == "cookie@example.com"


def test_missing_and_bad_tokens(client):
    missing = client.get("/api/v1/cart")
    assert missing.status_code == 401
    assert missing.json()["detail"] == "Authentication required. Please log in."

    bad = client.get("/api/v1/cart", headers={"Authorization": "Bearer nonsense"})
    assert bad.status_code == 401


def test_admin_routes_need_admin_role(client, make_user):
    customer = make_user()
    admin = make_user(role="ADMIN")

    assert client.get("/api/v1/admin/dashboard", headers=auth(customer)).status_code == 403
    assert client.post("/api/v1/products", json={"name": "X", "price": 1}, headers=auth(customer)).status_code == 403
    assert client.get("/api/v1/admin/dashboard", headers=auth(admin, "ADMIN")).status_code == 200


def test_checkout_and_pay_over_http(client, db, make_user, make_product):
    user = make_user()
    product = make_product(price=1200, stock=3)
    headers = auth(user)

    added = client.post("/api/v1/cart/items", json={"product_id": product, "quantity": 2}, headers=headers)
    assert added.status_code == 201

    order = client.post("/api/v1/orders/from-cart", json={}, headers=headers)
    assert order.status_code == 201
    order_id = order.json()["id"]
    assert order.json()["total_amount"] == 2400

    init = client.post("/api/v1/payments/init", json={"order_id": order_id}, headers=headers).json()
    assert init["paymentID"].startswith("PAY-")

    page = client.get("/api/v1/payments/mock-bkash-page", params={"paymentID": init["paymentID"]})
    assert init["paymentID"] in page.text

    callback = client.get("/api/v1/payments/bkash/callback", params={"paymentID": init["paymentID"]},
                          follow_redirects=False)
    assert callback.status_code in (302, 307)
    assert callback.headers["location"] == f"{config.FRONTEND_URL}/payment/success?trxID={init['paymentID']}"

    paid = client.get(f"/api/v1/orders/{order_id}", headers=headers).json()
    assert paid["status"] == "PAID"
    assert paid["payment"]["status"] == "SUCCESS"

    cancel = client.post(f"/api/v1/orders/{order_id}/cancel", headers=headers)
    assert cancel.status_code == 400


def test_insufficient_stock_over_http(client, db, make_user, make_product):
    user = make_user()
    product = make_product(name="Rare Sneaker", stock=1)

    resp = client.post("/api/v1/orders", json={"items": [{"product_id": product, "quantity": 2}]},
                       headers=auth(user))

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Insufficient stock for Rare Sneaker. Available: 1, Requested: 2"
    assert db["product"].find_one({"_id": ObjectId(product)})["stock"] == 1


def test_failed_callback_redirects_to_failure(client):
    resp = client.get("/api/v1/payments/bkash/callback", params={"paymentID": "PAY-UNKNOWN"},
                      follow_redirects=False)
    assert resp.headers["location"].startswith(f"{config.FRONTEND_URL}/payment/failed?message=")

    cancelled = client.get("/api/v1/payments/bkash/callback", params={"paymentID": "PAY-X", "status": "cancel"},
                           follow_redirects=False)
    assert cancelled.headers["location"] == f"{config.FRONTEND_URL}/payment/failed?message=cancel"


def test_other_users_order_over_http(client, make_user, make_product):
    owner, other = make_user(), make_user()
    product = make_product()
    order_id = client.post("/api/v1/orders", json={"items": [{"product_id": product, "quantity": 1}]},
                           headers=auth(owner)).json()["id"]

    assert client.get(f"/api/v1/orders/{order_id}", headers=auth(other)).status_code == 401
    assert client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth(other)).status_code == 401
    assert client.get("/api/v1/orders/not-an-id", headers=auth(owner)).status_code == 400


def test_public_catalog(client, make_user):
    admin = auth(make_user(role="ADMIN"), "ADMIN")
    category = client.post("/api/v1/categories", json={"name": "Jackets"}, headers=admin).json()
    client.post("/api/v1/products", json={"name": "Bomber", "price": 9000, "stock": 2,
                                          "category_id": category["id"]}, headers=admin)

    listing = client.get("/api/v1/products", params={"search": "bomb"}).json()
    assert [p["name"] for p in listing["products"]] == ["Bomber"]
    assert client.get("/api/v1/products/slug/bomber").json()["category"]["slug"] == "jackets"
    assert client.get("/api/v1/categories/slug/jackets").json()["product_count"] == 1


def test_category_products_clamps_paging(client, make_user):
    admin = auth(make_user(role="ADMIN"), "ADMIN")
    category = client.post("/api/v1/categories", json={"name": "Socks"}, headers=admin).json()
    client.post("/api/v1/products", json={"name": "Ankle Sock", "price": 200, "stock": 5,
                                          "category_id": category["id"]}, headers=admin)

    resp = client.get(f"/api/v1/categories/{category['id']}/products", params={"page": 0, "limit": -5})

    assert resp.status_code == 200
    body = resp.json()
    assert body["pagination"] == {"page": 1, "limit": 1, "total": 1, "total_pages": 1}
    assert [p["name"] for p in body["products"]] == ["Ankle Sock"]


def test_startup_creates_indexes(db, monkeypatch):
    calls = []
    monkeypatch.setattr(main, "db", db)
    monkeypatch.setattr(main, "ensure_indexes", calls.append)

    with TestClient(main.app):
        pass

    assert calls == [db]
