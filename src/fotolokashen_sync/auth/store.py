"""Encrypted, concurrency-safe storage for the signed-in user's credential.

This module introduces a *narrow* persistence interface (:class:`TokenStore`)
with an on-disk implementation (:class:`DiskTokenStore`) and an in-memory one
(:class:`MemoryTokenStore`).  The design follows these goals:

* **Confidentiality** – everything on disk is Fernet-encrypted and the files
  are created with mode ``0600`` inside an app-scoped directory.
* **Atomicity** – writes use *temp-file + os.replace*; a reader never sees a
  half-written credential.
* **Mutual exclusion** – one in-process lock plus an advisory lock file so
  that two processes sharing a storage dir cannot interleave updates.
* **Single use** – the pending PKCE verifier is claimed with an atomic rename
  so it can be exchanged at most once.

Environment variables
---------------------
FOTOLOKASHEN_STORAGE_DIR
    Base directory for all persisted data; credentials live in ``<dir>/auth``.
    Defaults to ``~/.fotolokashen`` when unset.
FOTOLOKASHEN_STORE_KEY
    Optional Fernet key.  When unset a key is generated once and kept next to
    the encrypted files (``store.key``, mode ``0600``).
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken

from fotolokashen_sync.auth.clock import Clock, default_clock
from fotolokashen_sync.auth.models import (
    DEFAULT_REFRESH_LEAD_SECONDS,
    Credential,
    PKCEPair,
)
from fotolokashen_sync.errors import TokenStorageError

_LOG = logging.getLogger("fotolokashen.auth.store")

STORE_KEY_ENV: Final[str] = "FOTOLOKASHEN_STORE_KEY"
STORAGE_DIR_ENV: Final[str] = "FOTOLOKASHEN_STORAGE_DIR"

# A login that is not completed within 15 minutes is abandoned.
PENDING_LOGIN_TTL_SECONDS: Final[int] = 900

# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #


def default_storage_dir() -> Path:
    """Return the app-scoped base directory for persisted state."""
    return Path(os.getenv(STORAGE_DIR_ENV) or Path.home() / ".fotolokashen").expanduser()


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    fd = os.open(tmp, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)  # atomic on POSIX


# The lock is taken from coroutines, so the blocking wait is capped at
# _LOCK_RETRIES * _LOCK_DELAY (50 ms) before the write fails.
_LOCK_RETRIES = 10
_LOCK_DELAY = 0.005


@contextmanager
def _file_lock(lock_path: Path, retries: int = _LOCK_RETRIES, delay: float = _LOCK_DELAY):  # noqa: D401
    """Advisory file lock using ``os.O_EXCL`` temp-file creation.

    Raises :class:`TimeoutError` once *retries* waits of *delay* seconds
    have passed; callers turn it into :class:`TokenStorageError`.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(retries + 1):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o600)
            os.close(fd)
            break  # acquired!
        except FileExistsError:
            if attempt == retries:
                raise TimeoutError(f"Could not acquire lock {lock_path}") from None
            time.sleep(delay)
    try:
        yield
    finally:
        lock_path.unlink(missing_ok=True)


def _load_or_create_key(key_path: Path, explicit: str | bytes | None) -> Fernet:
    raw = explicit or os.getenv(STORE_KEY_ENV)
    try:
        if raw:
            return Fernet(raw.encode() if isinstance(raw, str) else raw)
        if not key_path.exists():
            key_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                fd = os.open(key_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                pass  # another process created it first
            else:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(Fernet.generate_key())
                _LOG.info("Generated new token-store key at %s", key_path)
        return Fernet(key_path.read_bytes().strip())
    except (OSError, ValueError) as exc:
        raise TokenStorageError(f"Token store key unavailable: {exc}") from exc


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class TokenStore(Protocol):
    """Persistence contract for the current credential and pending login."""

    # ----- credential ------------------------------------------------------ #
    def save(self, credential: Credential) -> None: ...
    def load(self) -> Credential | None: ...
    def get_access_token(self) -> str | None: ...
    def get_refresh_token(self) -> str | None: ...
    def is_expired(self) -> bool: ...
    def needs_refresh(self) -> bool: ...
    def clear(self) -> None: ...

    # ----- pending PKCE login ---------------------------------------------- #
    def save_pending_login(self, pair: PKCEPair) -> None: ...
    def consume_pending_login(self) -> PKCEPair | None: ...
    def has_pending_login(self) -> bool: ...


class _CredentialQueries:
    """Getters and expiry predicates shared by the store implementations."""

    clock: Clock
    refresh_lead_seconds: float

    def load(self) -> Credential | None:  # pragma: no cover - overridden
        raise NotImplementedError

    def get_access_token(self) -> str | None:
        cred = self.load()
        return cred.access_token if cred else None

    def get_refresh_token(self) -> str | None:
        cred = self.load()
        return cred.refresh_token if cred else None

    def is_expired(self) -> bool:
        cred = self.load()
        return cred is None or cred.is_expired(clock=self.clock)

    def needs_refresh(self) -> bool:
        cred = self.load()
        return cred is None or cred.needs_refresh(
            clock=self.clock, lead_seconds=self.refresh_lead_seconds
        )


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


class DiskTokenStore(_CredentialQueries):
    """Fernet-encrypted file implementation of :class:`TokenStore`."""

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        *,
        encryption_key: str | bytes | None = None,
        clock: Clock = default_clock,
        refresh_lead_seconds: float = DEFAULT_REFRESH_LEAD_SECONDS,
        pending_login_ttl: int = PENDING_LOGIN_TTL_SECONDS,
    ) -> None:
        self.base_dir = Path(base_dir or default_storage_dir() / "auth").expanduser()
        self.base_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.clock = clock
        self.refresh_lead_seconds = refresh_lead_seconds
        self.pending_login_ttl = pending_login_ttl
        self._fernet = _load_or_create_key(self.base_dir / "store.key", encryption_key)
        self._lock = threading.RLock()

    # ---------------- paths ---------------------------------------------- #
    @property
    def _credential_path(self) -> Path:
        return self.base_dir / "credential.bin"

    @property
    def _pending_path(self) -> Path:
        return self.base_dir / "pending_login.bin"

    @property
    def _lock_path(self) -> Path:
        return self.base_dir / "store.lock"

    # ---------------- encrypted IO --------------------------------------- #
    def _write(self, path: Path, payload: dict) -> None:
        token = self._fernet.encrypt(json.dumps(payload, sort_keys=True).encode("utf-8"))
        try:
            with self._lock, _file_lock(self._lock_path):
                _atomic_write(path, token)
        except (OSError, TimeoutError) as exc:
            raise TokenStorageError(f"Could not write {path.name}: {exc}") from exc

    def _decode(self, path: Path, blob: bytes) -> dict:
        try:
            return json.loads(self._fernet.decrypt(blob).decode("utf-8"))
        except InvalidToken:
            raise TokenStorageError(f"{path.name} cannot be decrypted") from None
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TokenStorageError(f"{path.name} is corrupt: {exc}") from exc

    def _read(self, path: Path) -> dict | None:
        try:
            with self._lock:
                blob = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise TokenStorageError(f"Could not read {path.name}: {exc}") from exc
        return self._decode(path, blob)

    def _remove(self, path: Path) -> None:
        try:
            with self._lock, _file_lock(self._lock_path):
                path.unlink(missing_ok=True)
        except (OSError, TimeoutError) as exc:
            raise TokenStorageError(f"Could not remove {path.name}: {exc}") from exc

    # ---------------- credential ----------------------------------------- #
    def save(self, credential: Credential) -> None:
        self._write(self._credential_path, asdict(credential))
        _LOG.debug("Saved credential for subject=%s", credential.subject_id)

    def load(self) -> Credential | None:
        data = self._read(self._credential_path)
        if data is None:
            return None
        try:
            return Credential(**data)
        except TypeError as exc:
            raise TokenStorageError(f"credential record is malformed: {exc}") from exc

    def clear(self) -> None:
        self._remove(self._credential_path)
        _LOG.debug("Cleared stored credential")

    # ---------------- pending login -------------------------------------- #
    def save_pending_login(self, pair: PKCEPair) -> None:
        self._write(
            self._pending_path,
            {
                "verifier": pair.verifier,
                "challenge": pair.challenge,
                "created_at": self.clock(),
            },
        )

    def has_pending_login(self) -> bool:
        return self._pending_path.exists()

    def consume_pending_login(self) -> PKCEPair | None:
        """Return and atomically remove the pending PKCE pair (single-use)."""
        claimed = self._pending_path.with_suffix(".claimed")
        try:
            with self._lock:
                os.replace(self._pending_path, claimed)  # fails if a concurrent consumer won
                blob = claimed.read_bytes()
                claimed.unlink(missing_ok=True)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise TokenStorageError(f"Could not claim pending login: {exc}") from exc

        data = self._decode(claimed, blob)
        if self.clock() - float(data.get("created_at", 0)) > self.pending_login_ttl:
            _LOG.info("Discarded stale pending login")
            return None
        return PKCEPair(verifier=data["verifier"], challenge=data["challenge"])


# --------------------------------------------------------------------------- #
# In-memory implementation                                                    #
# --------------------------------------------------------------------------- #


class MemoryTokenStore(_CredentialQueries):
    """Process-local :class:`TokenStore`; nothing touches the disk."""

    def __init__(
        self,
        *,
        clock: Clock = default_clock,
        refresh_lead_seconds: float = DEFAULT_REFRESH_LEAD_SECONDS,
    ) -> None:
        self.clock = clock
        self.refresh_lead_seconds = refresh_lead_seconds
        self._credential: Credential | None = None
        self._pending: PKCEPair | None = None
        self._lock = threading.Lock()

    def save(self, credential: Credential) -> None:
        with self._lock:
            self._credential = credential

    def load(self) -> Credential | None:
        with self._lock:
            return self._credential

    def clear(self) -> None:
        with self._lock:
            self._credential = None

    def save_pending_login(self, pair: PKCEPair) -> None:
        with self._lock:
            self._pending = pair

    def has_pending_login(self) -> bool:
        with self._lock:
            return self._pending is not None

    def consume_pending_login(self) -> PKCEPair | None:
        with self._lock:
            pair, self._pending = self._pending, None
            return pair
