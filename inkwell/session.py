"""Passphrase unlock and session key lifecycle."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from inkwell.constants import DEFAULT_SESSION_TIMEOUT_MINUTES, INDEX_FILENAME, MAX_UNLOCK_ATTEMPTS
from inkwell.crypto import KdfParams, derive_key, zeroize
from inkwell.errors import AuthenticationError, SessionExpiredError
from inkwell.index import MetadataIndex

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path
    from types import TracebackType

LOGGER = logging.getLogger(__name__)


class Session:
    """Derived key material plus an inactivity deadline.

    Every sensitive operation goes through :meth:`require_key`, which checks
    expiry first and refreshes the deadline on success. Used as a context
    manager, the session locks itself on exit. ``on_lock`` runs once when the
    key is wiped, whether by expiry, an explicit lock or leaving the block.
    """

    def __init__(
        self,
        key: bytearray,
        *,
        timeout: float,
        clock: Callable[[], float] = time.monotonic,
        on_lock: Callable[[], None] | None = None,
    ) -> None:
        """Take ownership of ``key``; it is zeroized on lock."""
        self._key: bytearray | None = key
        self.timeout = timeout
        self._clock = clock
        self._on_lock = on_lock
        self.last_access = clock()

    @property
    def locked(self) -> bool:
        """Whether the key has been wiped."""
        return self._key is None

    def is_expired(self) -> bool:
        """Strictly past the deadline, or already locked."""
        if self._key is None:
            return True
        return self._clock() - self.last_access > self.timeout

    def require_key(self) -> bytearray:
        """Return the key for one sensitive call and reset the deadline.

        Raises:
            SessionExpiredError: The session timed out or was locked.

        """
        if self._key is None:
            msg = "Session is locked; unlock the vault again"
            raise SessionExpiredError(msg)
        if self.is_expired():
            LOGGER.info("Session expired after %.0f seconds of inactivity", self.timeout)
            self.lock()
            msg = "Session expired; unlock the vault again"
            raise SessionExpiredError(msg)
        self.last_access = self._clock()
        return self._key

    def lock(self) -> None:
        """Overwrite the key with zeros, drop it and release decrypted state."""
        if self._key is None:
            return
        zeroize(self._key)
        self._key = None
        if self._on_lock is not None:
            self._on_lock()

    def __enter__(self) -> Session:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.lock()


class SessionManager:
    """Unlocks a vault and issues sessions.

    Failed attempts are counted per manager instance. Once ``max_attempts``
    have failed, further unlocks are refused until a new manager is created.
    """

    def __init__(
        self,
        vault_dir: Path,
        *,
        timeout: float = DEFAULT_SESSION_TIMEOUT_MINUTES * 60,
        max_attempts: int = MAX_UNLOCK_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
        kdf_params: KdfParams | None = None,
        index: MetadataIndex | None = None,
    ) -> None:
        """Configure the manager; ``timeout`` is in seconds."""
        self.vault_dir = vault_dir
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.clock = clock
        self.kdf_params = kdf_params
        self.index = index or MetadataIndex(vault_dir / INDEX_FILENAME)
        self.failed_attempts = 0

    def unlock(self, passphrase: str | Callable[[], str]) -> Session:
        """Derive the key and authenticate it against the index.

        A callable is prompted until it succeeds or the attempt budget runs
        out; a plain string gets a single attempt. A vault with no index yet
        is created with a fresh salt.

        Raises:
            AuthenticationError: The passphrase was rejected.

        """
        prompt = passphrase if callable(passphrase) else None
        last_error: AuthenticationError | None = None
        while self.failed_attempts < self.max_attempts:
            secret = prompt() if prompt is not None else passphrase
            try:
                session = self._open(secret)  # type: ignore[arg-type]
            except AuthenticationError as exc:
                self.failed_attempts += 1
                last_error = exc
                LOGGER.warning(
                    "Unlock attempt %d/%d failed",
                    self.failed_attempts,
                    self.max_attempts,
                )
                if prompt is None:
                    raise
                continue
            self.failed_attempts = 0
            return session
        msg = f"Vault locked after {self.max_attempts} failed unlock attempts"
        raise AuthenticationError(msg) from last_error

    def is_expired(self, session: Session) -> bool:
        """Whether ``session`` is past its inactivity deadline."""
        return session.is_expired()

    def lock(self, session: Session) -> None:
        """Wipe the session key and the decrypted index."""
        session.lock()
        self.index.close()
        LOGGER.info("Vault locked")

    def _open(self, secret: str) -> Session:
        if not secret:
            msg = "Passphrase must not be empty"
            raise AuthenticationError(msg)
        if self.index.exists():
            key = derive_key(secret, self.index.read_header())
            try:
                self.index.load(key)
            except AuthenticationError:
                zeroize(key)
                raise
            LOGGER.info("Vault unlocked")
        else:
            params = self.kdf_params or KdfParams.generate()
            key = derive_key(secret, params)
            self.index.create(key, params)
            LOGGER.info("Initialised new vault at %s", self.vault_dir)
        return Session(key, timeout=self.timeout, clock=self.clock, on_lock=self.index.close)
