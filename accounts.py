"""
Registration, login, profile and password reset.

Login and password-reset requests answer with the same message whether
or not the email is known, so neither can be used to probe for accounts.
"""

import logging
import os
from datetime import timedelta
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, oid, run_in_transaction, serialize, utcnow
from errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from notifications import PASSWORD_RESET, dispatch
from schemas import User
from security import create_access_token, hash_password, hash_token, verify_password

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
RESET_REQUESTED = "If an account with that email exists, a password reset link has been sent."
PROFILE_FIELDS = ("name", "phone")

_dummy_hash = None


def _timing_hash() -> str:
    # Unknown emails still pay for one bcrypt check
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password("not-a-real-password")
    return _dummy_hash


def normalize_email(email: str) -> str:
    return str(email).strip().lower()


def public_user(user: dict) -> Optional[dict]:
    data = serialize(user)
    if data:
        data.pop("password_hash", None)
    return data


class AccountService:
    def __init__(self, db, notifier=None):
        self.db = db
        self.notifier = notifier

    def _session(self, user: dict) -> dict:
        return {
            "user": public_user(user),
            "token": create_access_token(str(user["_id"]), user["role"]),
        }

    def register(self, email: str, password: str, name: Optional[str] = None) -> dict:
        email = normalize_email(email)
        if self.db["user"].find_one({"email": email}):
            raise ConflictError("User already exists")

        user = User(email=email, password_hash=hash_password(password), name=name)
        try:
            user_id = create_document(self.db, "user", user)
        except DuplicateKeyError:
            raise ConflictError("User already exists")
        logger.info("Registered user %s", user_id)
        return self._session(self.db["user"].find_one({"_id": oid(user_id)}))

    def login(self, email: str, password: str) -> dict:
        user = self.db["user"].find_one({"email": normalize_email(email)})
        if not user:
            verify_password(password, _timing_hash())
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if not verify_password(password, user["password_hash"]):
            raise UnauthorizedError(INVALID_CREDENTIALS)
        return self._session(user)

    def get_profile(self, user_id: str) -> dict:
        user = self.db["user"].find_one({"_id": oid(user_id)})
        if not user:
            raise NotFoundError("User not found")
        return public_user(user)

    def update_profile(self, user_id: str, data: dict) -> dict:
        updates = {k: v for k, v in data.items() if k in PROFILE_FIELDS and v is not None}
        updates["updated_at"] = utcnow()
        user = self.db["user"].find_one_and_update(
            {"_id": oid(user_id)}, {"$set": updates}, return_document=ReturnDocument.AFTER,
        )
        if not user:
            raise NotFoundError("User not found")
        return public_user(user)

    # ----- Password reset -----

    def request_password_reset(self, email: str) -> dict:
        user = self.db["user"].find_one({"email": normalize_email(email)})
        if user:
            token = os.urandom(32).hex()
            now = utcnow()
            user_id = str(user["_id"])
            # One active token per user: a new request replaces the old one
            self.db["password_reset_token"].replace_one(
                {"user_id": user_id},
                {
                    "user_id": user_id,
                    "token_hash": hash_token(token),
                    "expires_at": now + timedelta(minutes=config.RESET_TOKEN_TTL_MINUTES),
                    "created_at": now,
                    "updated_at": now,
                },
                upsert=True,
            )
            logger.info("Password reset requested for user %s", user_id)
            dispatch(self.notifier, user["email"], PASSWORD_RESET, {"token": token})
        return {"message": RESET_REQUESTED}

    def reset_password(self, token: str, new_password: str) -> dict:
        digest = hash_token(token)
        new_hash = hash_password(new_password)

        def reset(tx):
            tokens = self.db["password_reset_token"]
            record = tokens.find_one_and_delete({"token_hash": digest}, session=tx.session)
            if not record:
                raise BadRequestError("Invalid or expired reset token")
            if record["expires_at"] < utcnow():
                # Commit the delete: expired tokens are cleaned up on use
                return None
            tx.on_rollback(tokens.insert_one, record)
            self.db["user"].update_one(
                {"_id": oid(record["user_id"])},
                {"$set": {"password_hash": new_hash, "updated_at": utcnow()}},
                session=tx.session,
            )
            return record["user_id"]

        user_id = run_in_transaction(self.db, reset)
        if user_id is None:
            raise BadRequestError("Reset token has expired")
        logger.info("Password reset completed for user %s", user_id)
        return {"message": "Password has been reset successfully"}
