import pytest
from bson.objectid import ObjectId

from carts import CartService
from database import create_document
from errors import BadRequestError, NotFoundError


@pytest.fixture
def carts(db):
    return CartService(db)


def test_new_user_gets_an_empty_cart(db, carts, make_user):
    user = make_user()
    cart = carts.get_or_create_cart(user)
    assert cart["items"] == []
    assert cart["total"] == 0
    assert cart["item_count"] == 0
    assert carts.get_or_create_cart(user)["id"] == cart["id"]
    assert db["cart"].count_documents({"user_id": user}) == 1


def test_cart_totals_use_current_prices(db, carts, make_user, make_product):
    user = make_user()
    tee = make_product(price=800, stock=10)
    mug = make_product(price=450, stock=10)
    create_document(db, "product_image", {
        "product_id": tee, "url": "https://cdn.example.com/tee.jpg", "is_primary": True,
    })
    carts.add_to_cart(user, tee, 2)
    carts.add_to_cart(user, mug, 1)

    db["product"].update_one({"_id": ObjectId(mug)}, {"$set": {"price": 500}})
    cart = carts.get_or_create_cart(user)

    assert cart["total"] == 2 * 800 + 500
    assert cart["item_count"] == 3
    lines = {line["product_id"]: line for line in cart["items"]}
    assert lines[tee]["image_url"] == "https://cdn.example.com/tee.jpg"
    assert lines[mug]["subtotal"] == 500
    assert lines[mug]["image_url"] is None


def test_adding_same_product_accumulates(carts, make_user, make_product):
    user = make_user()
    product = make_product(stock=5)
    carts.add_to_cart(user, product, 2)
    item = carts.add_to_cart(user, product, 2)
    assert item["quantity"] == 4
    assert len(carts.get_or_create_cart(user)["items"]) == 1


def test_add_beyond_stock(carts, make_user, make_product):
    user = make_user()
    product = make_product(stock=3)

    with pytest.raises(BadRequestError, match="Only 3 left"):
        carts.add_to_cart(user, product, 4)

    carts.add_to_cart(user, product, 2)
    with pytest.raises(BadRequestError, match="Cannot add 2 more. Only 1 available"):
        carts.add_to_cart(user, product, 2)


def test_add_validates_input(carts, make_user):
    user = make_user()
    with pytest.raises(NotFoundError):
        carts.add_to_cart(user, str(ObjectId()), 1)
    with pytest.raises(BadRequestError):
        carts.add_to_cart(user, str(ObjectId()), 0)
    with pytest.raises(BadRequestError, match="Invalid id"):
        carts.add_to_cart(user, "not-an-id", 1)


def test_update_quantity(carts, make_user, make_product):
    user = make_user()
    product = make_product(stock=4)
    item = carts.add_to_cart(user, product, 1)

    assert carts.update_cart_item(user, item["id"], 4)["quantity"] == 4
    with pytest.raises(BadRequestError, match="Only 4 units available"):
        carts.update_cart_item(user, item["id"], 5)
    with pytest.raises(BadRequestError):
        carts.update_cart_item(user, item["id"], -1)


def test_update_to_zero_removes_line(carts, make_user, make_product):
    user = make_user()
    item = carts.add_to_cart(user, make_product(), 1)
    assert carts.update_cart_item(user, item["id"], 0) == {"message": "Item removed from cart"}
    assert carts.get_or_create_cart(user)["items"] == []


def test_items_of_other_users_are_invisible(carts, make_user, make_product):
    owner, other = make_user(), make_user()
    item = carts.add_to_cart(owner, make_product(), 1)
    carts.get_or_create_cart(other)

    with pytest.raises(NotFoundError, match="Cart item not found"):
        carts.update_cart_item(other, item["id"], 2)
    with pytest.raises(NotFoundError):
        carts.remove_from_cart(other, item["id"])
    assert carts.get_or_create_cart(owner)["item_count"] == 1


def test_remove_and_clear(carts, make_user, make_product):
    user = make_user()
    first = carts.add_to_cart(user, make_product(), 1)
    carts.add_to_cart(user, make_product(), 2)

    carts.remove_from_cart(user, first["id"])
    assert carts.get_or_create_cart(user)["item_count"] == 2

    assert carts.clear_cart(user) == {"message": "Cart cleared successfully"}
    assert carts.get_or_create_cart(user)["items"] == []


def test_clear_without_cart(carts, make_user):
    with pytest.raises(NotFoundError, match="Cart not found"):
        carts.clear_cart(make_user())


def test_adding_to_cart_does_not_reserve_stock(db, carts, make_user, make_product):
    user = make_user()
    product = make_product(stock=2)
    carts.add_to_cart(user, product, 2)
    assert db["product"].find_one({"_id": ObjectId(product)})["stock"] == 2
