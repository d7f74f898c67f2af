import pytest
from bson.objectid import ObjectId

from admin import AdminService
from errors import BadRequestError, NotFoundError
from orders import OrderService
from payments import PaymentService


@pytest.fixture
def admin(db, notifier):
    return AdminService(db, notifier)


@pytest.fixture
def shop(db, notifier, make_user, make_product):
    orders = OrderService(db, notifier)
    payments = PaymentService(db, notifier)
    alice = make_user(email="alice@example.com", name="Alice")
    bob = make_user(email="bob@example.com", name="Bob")
    tee = make_product(name="Tee", price=1000, stock=20)
    mug = make_product(name="Mug", price=300, stock=8)

    paid = orders.create_order(alice, [{"product_id": tee, "quantity": 3}])
    payments.execute_payment(payments.initiate_payment(alice, paid["id"])["paymentID"])
    pending = orders.create_order(bob, [{"product_id": mug, "quantity": 2}, {"product_id": tee, "quantity": 1}])
    return {"alice": alice, "bob": bob, "tee": tee, "mug": mug, "paid": paid, "pending": pending}


def test_dashboard_stats(admin, shop):
    stats = admin.get_dashboard_stats()

    assert stats["total_users"] == 2
    assert stats["total_products"] == 2
    assert stats["total_orders"] == 2
    assert stats["total_revenue"] == 3000
    assert stats["orders_by_status"] == {"PAID": 1, "PENDING": 1}
    assert {o["user"]["email"] for o in stats["recent_orders"]} == {"alice@example.com", "bob@example.com"}
    assert [p["name"] for p in stats["low_stock_products"]] == ["Mug"]


def test_all_orders_filters(admin, shop):
    everything = admin.get_all_orders()
    assert everything["pagination"]["total"] == 2

    paid = admin.get_all_orders(status="PAID")["orders"]
    assert [o["id"] for o in paid] == [shop["paid"]["id"]]
    assert paid[0]["payment"]["status"] == "SUCCESS"

    by_email = admin.get_all_orders(search="BOB@")["orders"]
    assert [o["id"] for o in by_email] == [shop["pending"]["id"]]
    assert by_email[0]["user"]["name"] == "Bob"

    by_id = admin.get_all_orders(search=shop["paid"]["id"])["orders"]
    assert [o["id"] for o in by_id] == [shop["paid"]["id"]]


def test_admin_moves_order_through_fulfilment(db, admin, shop):
    order_id = shop["paid"]["id"]
    admin.update_order_status(order_id, "PROCESSING")
    shipped = admin.update_order_status(order_id, "SHIPPED", tracking_number="RX123")

    assert shipped["status"] == "SHIPPED"
    assert shipped["tracking_number"] == "RX123"
    assert shipped["estimated_delivery"] is not None
    assert db["product"].find_one({"_id": ObjectId(shop["tee"])})["stock"] == 16


def test_users_listing_with_counts(admin, shop):
    listed = admin.get_all_users()
    counts = {u["email"]: u["order_count"] for u in listed["users"]}
    assert counts == {"alice@example.com": 1, "bob@example.com": 1}
    assert all("password_hash" not in u for u in listed["users"])

    assert [u["name"] for u in admin.get_all_users(search="ali")["users"]] == ["Alice"]
    assert admin.get_all_users(role="ADMIN")["users"] == []


def test_update_user_role(admin, shop):
    promoted = admin.update_user_role(shop["bob"], "ADMIN")
    assert promoted["role"] == "ADMIN"
    assert [u["email"] for u in admin.get_all_users(role="ADMIN")["users"]] == ["bob@example.com"]

    with pytest.raises(BadRequestError):
        admin.update_user_role(shop["bob"], "OWNER")
    with pytest.raises(NotFoundError):
        admin.update_user_role(str(ObjectId()), "ADMIN")


def test_product_analytics(admin, shop):
    analytics = admin.get_product_analytics()

    top = {row["product"]["name"]: row for row in analytics["top_selling_products"]}
    assert top["Tee"]["total_sold"] == 4
    assert top["Tee"]["order_count"] == 2
    assert top["Mug"]["total_sold"] == 2
    assert analytics["top_selling_products"][0]["product"]["name"] == "Tee"
    assert analytics["total_items_sold"] == 6
    assert [p["name"] for p in analytics["low_stock_products"]] == ["Mug"]
