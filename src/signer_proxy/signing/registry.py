"""Per-key signer cache.

One TransactionSigner per key handle, created on first use. The public key
is fetched once per key for the life of the registry.
"""

import asyncio
import logging
from typing import Optional

from signer_proxy.errors import MalformedRequest
from signer_proxy.signing.base import SignerConnector
from signer_proxy.signing.signer import DEFAULT_SIGNING_TIMEOUT, TransactionSigner

logger = logging.getLogger(__name__)


class SignerRegistry:
    """Caches TransactionSigner instances for one connector."""

    def __init__(
        self,
        connector: SignerConnector,
        timeout: Optional[float] = DEFAULT_SIGNING_TIMEOUT,
        default_key_id: Optional[str] = None,
    ):
        self.connector = connector
        self.timeout = timeout
        self.default_key_id = default_key_id
        self._signers: dict[str, TransactionSigner] = {}
        self._lock = asyncio.Lock()

    async def get(self, key_id: str) -> TransactionSigner:
        """Get or create the signer for a key handle.

        Raises:
            MalformedRequest: If the key id is invalid or unknown to the signer
            SignerUnavailable: If the signer cannot be reached
        """
        key_handle = self.connector.parse_key_handle(key_id)

        async with self._lock:
            signer = self._signers.get(key_handle)
            if signer is not None:
                return signer

            signer = await TransactionSigner.create(self.connector, key_handle, timeout=self.timeout)
            self._signers[key_handle] = signer
            return signer

    async def default(self) -> TransactionSigner:
        """Signer for the configured default key.

        Raises:
            MalformedRequest: If no default key is configured
        """
        if not self.default_key_id:
            raise MalformedRequest("No default signing key configured (SIGNING_KEY_ID)", field="key_id")
        return await self.get(self.default_key_id)

    @property
    def cached_keys(self) -> list[str]:
        return sorted(self._signers)

    def clear(self) -> None:
        self._signers.clear()
