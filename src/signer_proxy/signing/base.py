"""Base interfaces for signer connectors.

A connector wraps exactly one session with a device or signing service and
exposes the only two operations the signing pipeline needs:

1. fetch_public_key(key_handle): public key of an HSM-resident key
2. sign_digest(key_handle, digest): raw ECDSA (r, s) over a 32-byte digest

Connectors know nothing about transactions, recovery ids or chains.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Callable, Optional, TypeVar

from eth_keys import keys

from signer_proxy.errors import MalformedRequest
from signer_proxy.transaction.models import RawSignature

logger = logging.getLogger(__name__)

T = TypeVar("T")

# session_id -> asyncio.Lock; connectors that share a device session share its lock
_session_locks: dict[str, asyncio.Lock] = {}


def clear_session_locks() -> None:
    """Forget all session locks (tests run each case on a fresh loop)."""
    _session_locks.clear()


class ConnectorType(str, Enum):
    """Type of signer connector."""
    YUBIHSM = "yubihsm"       # YubiHSM 2 over USB or yubihsm-connector
    AWS_KMS = "aws_kms"       # AWS KMS asymmetric keys
    PKCS11 = "pkcs11"         # Generic PKCS#11 token
    MOCK = "mock"             # In-memory keys (development/tests)


class SignerConnector(ABC):
    """Abstract base class for signer connectors.

    Implementations should NEVER expose raw private keys.
    All signing operations return signatures only.
    """

    def __init__(self, connector_type: ConnectorType):
        self.connector_type = connector_type
        # Serializes blocking device calls even when the awaiting caller
        # has already given up on them.
        self._device_lock = threading.Lock()

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Stable identifier of the underlying device/service session."""
        pass

    @abstractmethod
    async def fetch_public_key(self, key_handle: str) -> keys.PublicKey:
        """Get the public key for a key handle.

        Args:
            key_handle: Backend-specific key identifier

        Returns:
            eth_keys PublicKey

        Raises:
            KeyNotFoundError: If the key does not exist
            ConnectorError: On transport or authentication failure
        """
        pass

    @abstractmethod
    async def sign_digest(self, key_handle: str, digest: bytes) -> RawSignature:
        """Sign a 32-byte digest with an HSM-resident key.

        Args:
            key_handle: Backend-specific key identifier
            digest: Exact 32-byte digest to sign (no further hashing)

        Returns:
            RawSignature, not necessarily in low-s form

        Raises:
            KeyNotFoundError: If the key does not exist
            ConnectorError: On transport or authentication failure
        """
        pass

    def parse_key_handle(self, key_handle: str) -> str:
        """Validate a key handle from a request and return its canonical form.

        Raises:
            MalformedRequest: If the handle cannot name a key on this backend
        """
        key_handle = str(key_handle).strip()
        if not key_handle:
            raise MalformedRequest("Key id must not be empty", field="key_id")
        return key_handle

    async def open(self) -> None:
        """Establish the session. Connectors may also open lazily."""
        return None

    async def close(self) -> None:
        """Release the session."""
        return None

    async def health_check(self) -> bool:
        """Check if the signer is reachable.

        Returns:
            True if backend is ready to sign
        """
        return True

    @asynccontextmanager
    async def exclusive(self, operation: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Hold the device session for one operation.

        Most HSMs process one command at a time per authenticated session,
        so every fetch_public_key/sign_digest call is made inside this block.

        Example:
            async with connector.exclusive("sign_digest", timeout=30.0):
                signature = await connector.sign_digest(key_handle, digest)

        Raises:
            SessionBusyError: If the session is not free within timeout
        """
        # no await between lookup and insert, so one loop always sees one lock
        lock = _session_locks.get(self.session_id)
        if lock is None:
            lock = _session_locks[self.session_id] = asyncio.Lock()

        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout or None)
        except asyncio.TimeoutError:
            logger.warning(f"Session {self.session_id} busy after {timeout}s: {operation}")
            raise SessionBusyError(f"Session {self.session_id} still busy after {timeout}s")

        logger.debug(f"Session {self.session_id} acquired: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Session {self.session_id} released: {operation}")

    async def _run_blocking(self, func: Callable[[], T]) -> T:
        """Run a blocking SDK call in the default executor under the device lock."""

        def locked() -> T:
            with self._device_lock:
                return func()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, locked)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.connector_type.value}, session={self.session_id})"


class ConnectorError(Exception):
    """Exception raised when a connector call fails."""
    pass


class KeyNotFoundError(ConnectorError):
    """Exception raised when a signing key is not found."""
    pass


class SessionBusyError(ConnectorError):
    """Exception raised when the device session stays locked past the timeout."""
    pass


def public_key_from_uncompressed(point: bytes) -> keys.PublicKey:
    """Build a PublicKey from a 65-byte (0x04-prefixed) or 64-byte point."""
    if len(point) == 65 and point[0] == 0x04:
        point = point[1:]
    if len(point) != 64:
        raise ConnectorError(f"Unexpected public key length: {len(point)}")
    return keys.PublicKey(point)


def public_key_from_cryptography(public_key) -> keys.PublicKey:
    """Convert a cryptography EllipticCurvePublicKey to an eth_keys PublicKey."""
    from cryptography.hazmat.primitives.asymmetric.ec import (
        SECP256K1,
        EllipticCurvePublicKey,
    )
    from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

    if not isinstance(public_key, EllipticCurvePublicKey) or not isinstance(
        public_key.curve, SECP256K1
    ):
        raise ConnectorError("Signing key is not a secp256k1 key")
    raw = public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return public_key_from_uncompressed(raw)
