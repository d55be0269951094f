"""Authentication capability, a local SQLite provider and the session wrapper."""

import asyncio
import hashlib
import hmac
import logging
import re
import secrets
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable

from dermasync.errors import AuthenticationError
from dermasync.store.connection import get_connection, init_database

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
MIN_PASSWORD_LENGTH = 8
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

IdentityCallback = Callable[[str | None], Awaitable[None]]


class AuthProvider(ABC):
    """Third-party identity provider. Methods return the user id."""

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> str:
        ...

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> str:
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        ...

    @abstractmethod
    async def reset_password(self, email: str) -> None:
        ...


def hash_password(password: str, salt: bytes) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS
    ).hex()


class LocalAuthProvider(AuthProvider):
    """Accounts stored in the local SQLite database."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        init_database(self.db_path)

    def _find_user(self, email: str):
        conn = get_connection(self.db_path)
        try:
            return conn.execute(
                "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
        finally:
            conn.close()

    def _create_user(self, email: str, password: str) -> str:
        email = email.strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise AuthenticationError("Please enter a valid email address")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthenticationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if self._find_user(email):
            raise AuthenticationError("An account with this email already exists")

        user_id = str(uuid.uuid4())
        salt = secrets.token_bytes(16)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO users (id, email, password_hash, salt) VALUES (?, ?, ?, ?)",
                (user_id, email, hash_password(password, salt), salt.hex()),
            )
            conn.commit()
        finally:
            conn.close()
        return user_id

    def _verify(self, email: str, password: str) -> str:
        row = self._find_user(email)
        if row is None:
            raise AuthenticationError("Invalid email or password")
        expected = hash_password(password, bytes.fromhex(row["salt"]))
        if not hmac.compare_digest(expected, row["password_hash"]):
            raise AuthenticationError("Invalid email or password")
        return row["id"]

    def _request_reset(self, email: str) -> None:
        row = self._find_user(email)
        if row is None:
            # Same outcome as success so accounts cannot be enumerated
            logger.info("Password reset requested for unknown account")
            return
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO password_resets (token, user_id) VALUES (?, ?)",
                (secrets.token_urlsafe(32), row["id"]),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Password reset requested for user %s", row["id"])

    async def sign_in(self, email: str, password: str) -> str:
        return await asyncio.to_thread(self._verify, email, password)

    async def sign_up(self, email: str, password: str) -> str:
        return await asyncio.to_thread(self._create_user, email, password)

    async def sign_out(self) -> None:
        return None

    async def reset_password(self, email: str) -> None:
        await asyncio.to_thread(self._request_reset, email)


class AuthSession:
    """
    Tracks the signed-in identity and notifies listeners when it changes.

    Owner-scoped components never read this directly; the identity is
    passed to them explicitly.
    """

    def __init__(self, provider: AuthProvider):
        self.provider = provider
        self._identity: str | None = None
        self._callbacks: list[IdentityCallback] = []

    def current_identity(self) -> str | None:
        return self._identity

    def on_identity_change(self, callback: IdentityCallback) -> None:
        self._callbacks.append(callback)

    async def _set_identity(self, identity: str | None) -> None:
        if identity == self._identity:
            return
        self._identity = identity
        logger.info("Auth state changed. User: %s", identity)
        for callback in list(self._callbacks):
            await callback(identity)

    async def sign_in(self, email: str, password: str) -> str:
        identity = await self.provider.sign_in(email, password)
        await self._set_identity(identity)
        return identity

    async def sign_up(self, email: str, password: str) -> str:
        identity = await self.provider.sign_up(email, password)
        await self._set_identity(identity)
        return identity

    async def sign_out(self) -> None:
        await self.provider.sign_out()
        await self._set_identity(None)

    async def reset_password(self, email: str) -> None:
        await self.provider.reset_password(email)
