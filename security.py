from datetime import datetime, timedelta, timezone
from hashlib import sha256

import bcrypt
import jwt
from pydantic import BaseModel

import config
from errors import ForbiddenError, UnauthorizedError
from schemas import Role


class Identity(BaseModel):
    """Who is calling, as carried by the access token."""
    user_id: str
    role: Role


def _password_bytes(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)
    return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


def hash_token(token: str) -> str:
    return sha256(token.encode("utf-8")).hexdigest()


def create_access_token(user_id: str, role: str) -> str:
    expires = datetime.now(timezone.utc) + timedelta(days=config.JWT_EXPIRES_DAYS)
    payload = {"id": user_id, "role": role, "exp": expires}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> Identity:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired. Please log in again.")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid token. Please log in again.")
    try:
        return Identity(user_id=payload["id"], role=payload["role"])
    except (KeyError, ValueError):
        raise UnauthorizedError("Invalid token. Please log in again.")


def require_role(identity: Identity, required_role: Role) -> Identity:
    """Capability check used by every role-restricted operation."""
    if identity is None or identity.role != required_role:
        raise ForbiddenError("Access denied. Insufficient permissions.")
    return identity
