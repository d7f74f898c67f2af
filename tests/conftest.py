import itertools

import mongomock
import pytest

import config
from database import create_document, ensure_indexes
from notifications import Notifier
from schemas import Product, User
from security import hash_password

_counter = itertools.count(1)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def send(self, recipient, template, data):
        self.sent.append((recipient, template, data))

    def of(self, template):
        return [s for s in self.sent if s[1] == template]


class BrokenNotifier(Notifier):
    def send(self, recipient, template, data):
        raise ConnectionError("SMTP relay unreachable")


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    # mongomock has no sessions, so the compensation path is what runs here
    monkeypatch.setattr(config, "DATABASE_TRANSACTIONS", False)
    monkeypatch.setattr(config, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_user(db):
    def _make(email=None, password="secret123", role="CUSTOMER", name="Test User"):
        email = email or f"user{next(_counter)}@example.com"
        user = User(email=email, password_hash=hash_password(password), role=role, name=name)
        return create_document(db, "user", user)
    return _make


@pytest.fixture
def make_product(db):
    def _make(name=None, price=1000, stock=10, category_id=None):
        name = name or f"Product {next(_counter)}"
        product = Product(name=name, slug=name.lower().replace(" ", "-"), price=price, stock=stock,
                          category_id=category_id)
        return create_document(db, "product", product)
    return _make


@pytest.fixture
def make_address(db):
    def _make(user_id, is_default=False, city="Dhaka"):
        return create_document(db, "address", {
            "user_id": user_id,
            "full_name": "Test User",
            "phone": "01712345678",
            "address_line1": "House 1, Road 2",
            "city": city,
            "state": "Dhaka",
            "postal_code": "1207",
            "country": "Bangladesh",
            "is_default": is_default,
        })
    return _make
