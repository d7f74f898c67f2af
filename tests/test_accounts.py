from datetime import timedelta

import pytest
from bson.objectid import ObjectId

from accounts import INVALID_CREDENTIALS, RESET_REQUESTED, AccountService
from database import utcnow
from errors import BadRequestError, ConflictError, ForbiddenError, UnauthorizedError
from notifications import PASSWORD_RESET
from schemas import Role
from security import (
    Identity,
    create_access_token,
    decode_access_token,
    hash_token,
    require_role,
)


@pytest.fixture
def accounts(db, notifier):
    return AccountService(db, notifier)


def reset_token(notifier):
    return notifier.of(PASSWORD_RESET)[-1][2]["token"]


def test_register_returns_user_and_token(db, accounts):
    session = accounts.register("  Shopper@Example.COM ", "hunter22", name="Shopper")

    user = session["user"]
    assert user["email"] == "shopper@example.com"
    assert user["role"] == "CUSTOMER"
    assert "password_hash" not in user
    stored = db["user"].find_one({"_id": ObjectId(user["id"])})
    assert stored["password_hash"] != "hunter22"

    identity = decode_access_token(session["token"])
    assert identity.user_id == user["id"]
    assert identity.role == Role.CUSTOMER


def test_register_duplicate_email(accounts):
    accounts.register("dup@example.com", "hunter22")
    with pytest.raises(ConflictError, match="User already exists"):
        accounts.register("DUP@example.com", "other-pass")


def test_login(accounts):
    accounts.register("login@example.com", "hunter22")

    session = accounts.login("Login@Example.com", "hunter22")
    assert session["user"]["email"] == "login@example.com"

    with pytest.raises(UnauthorizedError) as wrong_password:
        accounts.login("login@example.com", "nope")
    with pytest.raises(UnauthorizedError) as unknown_email:
        accounts.login("ghost@example.com", "hunter22")
    assert wrong_password.value.message == unknown_email.value.message == INVALID_CREDENTIALS


def test_profile_update_only_touches_profile_fields(accounts):
    user_id = accounts.register("me@example.com", "hunter22")["user"]["id"]

    updated = accounts.update_profile(user_id, {"name": "New Name", "phone": "01800000000", "role": "ADMIN"})

    assert updated["name"] == "New Name"
    assert updated["phone"] == "01800000000"
    assert updated["role"] == "CUSTOMER"
    assert accounts.get_profile(user_id)["name"] == "New Name"


def test_password_reset_flow(db, accounts, notifier):
    accounts.register("forgot@example.com", "old-password")

    assert accounts.request_password_reset("forgot@example.com") == {"message": RESET_REQUESTED}
    token = reset_token(notifier)
    stored = db["password_reset_token"].find_one()
    assert stored["token_hash"] == hash_token(token)
    assert token not in str(stored)

    accounts.reset_password(token, "new-password")

    assert accounts.login("forgot@example.com", "new-password")["token"]
    with pytest.raises(UnauthorizedError):
        accounts.login("forgot@example.com", "old-password")
    with pytest.raises(BadRequestError, match="Invalid or expired"):
        accounts.reset_password(token, "third-password")


def test_reset_request_for_unknown_email_looks_the_same(db, accounts, notifier):
    assert accounts.request_password_reset("nobody@example.com") == {"message": RESET_REQUESTED}
    assert notifier.sent == []
    assert db["password_reset_token"].count_documents({}) == 0


def test_new_reset_request_replaces_old_token(db, accounts, notifier):
    accounts.register("twice@example.com", "old-password")
    accounts.request_password_reset("twice@example.com")
    first = reset_token(notifier)
    accounts.request_password_reset("twice@example.com")
    second = reset_token(notifier)

    assert db["password_reset_token"].count_documents({}) == 1
    with pytest.raises(BadRequestError):
        accounts.reset_password(first, "new-password")
    accounts.reset_password(second, "new-password")


def test_expired_reset_token_is_rejected_and_removed(db, accounts, notifier):
    accounts.register("late@example.com", "old-password")
    accounts.request_password_reset("late@example.com")
    token = reset_token(notifier)
    db["password_reset_token"].update_one({}, {"$set": {"expires_at": utcnow() - timedelta(minutes=1)}})

    with pytest.raises(BadRequestError, match="Reset token has expired"):
        accounts.reset_password(token, "new-password")

    assert db["password_reset_token"].count_documents({}) == 0
    assert accounts.login("late@example.com", "old-password")


def test_tampered_and_expired_access_tokens(monkeypatch):
    token = create_access_token("abc", "CUSTOMER")
    with pytest.raises(UnauthorizedError, match="Invalid token"):
        decode_access_token(token[:-2] + ("AA" if not token.endswith("AA") else "BB"))

    monkeypatch.setattr("config.JWT_EXPIRES_DAYS", -1)
    with pytest.raises(UnauthorizedError, match="Token expired"):
        decode_access_token(create_access_token("abc", "CUSTOMER"))


def test_require_role():
    admin = Identity(user_id="a", role=Role.ADMIN)
    customer = Identity(user_id="c", role=Role.CUSTOMER)

    assert require_role(admin, Role.ADMIN) is admin
    with pytest.raises(ForbiddenError):
        require_role(customer, Role.ADMIN)
    with pytest.raises(ForbiddenError):
        require_role(None, Role.ADMIN)
