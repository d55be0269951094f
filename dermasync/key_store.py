"""Persistence of the installation encryption key."""

import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from dermasync.cipher_box import KEY_SIZE, generate_key

logger = logging.getLogger(__name__)

KEY_ACCOUNT = "encryption_key"


class SecureStorage(ABC):
    """Platform secure storage capability, addressed by account name."""

    @abstractmethod
    def get(self, account: str) -> bytes | None:
        ...

    @abstractmethod
    def set(self, account: str, data: bytes) -> None:
        ...

    @abstractmethod
    def delete(self, account: str) -> None:
        ...


class MemorySecureStorage(SecureStorage):
    """Process-local storage, for tests."""

    def __init__(self):
        self._items: dict[str, bytes] = {}

    def get(self, account: str) -> bytes | None:
        return self._items.get(account)

    def set(self, account: str, data: bytes) -> None:
        self._items[account] = bytes(data)

    def delete(self, account: str) -> None:
        self._items.pop(account, None)


class FileSecureStorage(SecureStorage):
    """One owner-only file per account under a private directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, account: str) -> Path:
        if not re.fullmatch(r"[A-Za-z0-9_.-]+", account):
            raise ValueError(f"Invalid account name: {account!r}")
        return self.directory / f"{account}.key"

    def get(self, account: str) -> bytes | None:
        path = self._path(account)
        if not path.exists():
            return None
        return path.read_bytes()

    def set(self, account: str, data: bytes) -> None:
        self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        path = self._path(account)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            os.chmod(tmp_name, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def delete(self, account: str) -> None:
        self._path(account).unlink(missing_ok=True)


class KeyStore:
    """Loads and saves the symmetric key. Key bytes are never logged."""

    def __init__(self, storage: SecureStorage, account: str = KEY_ACCOUNT):
        self.storage = storage
        self.account = account

    def load(self) -> bytes | None:
        key = self.storage.get(self.account)
        if key is not None and len(key) != KEY_SIZE:
            logger.error("Stored encryption key has the wrong size, ignoring it")
            return None
        return key

    def save(self, key: bytes) -> None:
        """Overwrite any existing key."""
        self.storage.delete(self.account)
        self.storage.set(self.account, key)

    def load_or_create(self) -> bytes:
        key = self.load()
        if key is not None:
            logger.info("Using existing encryption key from secure storage")
            return key
        logger.info("Creating and storing new encryption key")
        key = generate_key()
        self.save(key)
        return key

    @property
    def retired_account(self) -> str:
        return f"{self.account}.retired"

    def load_retired(self) -> list[bytes]:
        """Keys replaced by `rotate()`, most recent first."""
        data = self.storage.get(self.retired_account)
        if not data:
            return []
        if len(data) % KEY_SIZE:
            logger.error("Retired key material is corrupt, ignoring it")
            return []
        return [data[i:i + KEY_SIZE] for i in range(0, len(data), KEY_SIZE)]

    def rotate(self) -> bytes:
        """
        Replace the current key with a new one and keep the old key as
        retired, so existing ciphertext can still be migrated.
        """
        current = self.load()
        if current is not None:
            retired = [current] + self.load_retired()
            self.storage.set(self.retired_account, b"".join(retired))
        key = generate_key()
        self.save(key)
        logger.info("Encryption key rotated, %d retired keys kept", len(self.load_retired()))
        return key
