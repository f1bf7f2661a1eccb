"""Transaction signing orchestrator.

Signing flow:
1. Encode the unsigned transaction (chain id in the v slot)
2. Hash it (Keccak-256)
3. Ask the connector for a raw (r, s) over the digest, one call per session at a time
4. Normalize s to the lower half of the curve order
5. Resolve the recovery id against the signer's known public key
6. Encode the signed transaction with v = recovery_id + 2 * chain_id + 35
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from eth_keys import keys

from signer_proxy.errors import MalformedRequest, SignerUnavailable
from signer_proxy.signing.base import ConnectorError, KeyNotFoundError, SignerConnector
from signer_proxy.signing.recovery import resolve_recovery_id
from signer_proxy.transaction.codec import (
    decode_request_fields,
    encode_signed,
    encode_unsigned,
    encode_v,
)
from signer_proxy.transaction.hashing import digest as keccak_digest
from signer_proxy.transaction.models import RawSignature, UnsignedTransaction

logger = logging.getLogger(__name__)

DEFAULT_SIGNING_TIMEOUT = 30.0


@dataclass(frozen=True)
class SignerIdentity:
    """Public identity of an HSM-resident signing key."""
    key_handle: str
    public_key: keys.PublicKey

    @property
    def address(self) -> str:
        return self.public_key.to_checksum_address()


class TransactionSigner:
    """Signs legacy transactions with a key that never leaves the signer.

    One instance per key handle. The SignerIdentity is fetched once in
    create() and only read afterwards, so an instance is safe to share
    between concurrent requests.
    """

    def __init__(
        self,
        connector: SignerConnector,
        identity: SignerIdentity,
        timeout: Optional[float] = DEFAULT_SIGNING_TIMEOUT,
    ):
        self.connector = connector
        self.identity = identity
        self.timeout = timeout

    @classmethod
    async def create(
        cls,
        connector: SignerConnector,
        key_handle: str,
        timeout: Optional[float] = DEFAULT_SIGNING_TIMEOUT,
    ) -> "TransactionSigner":
        """Fetch the signer identity and build a TransactionSigner.

        Raises:
            MalformedRequest: If the key does not exist on the signer
            SignerUnavailable: If the public key cannot be fetched
        """
        key_handle = str(key_handle)
        try:
            async with connector.exclusive("fetch_public_key", timeout=timeout):
                public_key = await asyncio.wait_for(
                    connector.fetch_public_key(key_handle), timeout=timeout
                )
        except KeyNotFoundError as e:
            raise MalformedRequest(f"Unknown key {key_handle}: {e}", field="key_id")
        except ConnectorError as e:
            raise SignerUnavailable(f"Could not fetch public key for key {key_handle}: {e}")
        except asyncio.TimeoutError:
            raise SignerUnavailable(
                f"Timed out after {timeout}s fetching public key for key {key_handle}"
            )

        identity = SignerIdentity(key_handle=key_handle, public_key=public_key)
        logger.info(f"Signer ready: key {key_handle} -> {identity.address}")
        return cls(connector, identity, timeout=timeout)

    @property
    def address(self) -> str:
        return self.identity.address

    async def _sign_digest(self, digest: bytes) -> RawSignature:
        """Call the connector inside the session critical section."""
        key_handle = self.identity.key_handle
        try:
            async with self.connector.exclusive("sign_digest", timeout=self.timeout):
                return await asyncio.wait_for(
                    self.connector.sign_digest(key_handle, digest), timeout=self.timeout
                )
        except (ConnectorError, ValueError) as e:
            # ValueError: the connector could not decode the device response
            logger.warning(f"Signer unavailable for key {key_handle}: {e}")
            raise SignerUnavailable(f"Signer unavailable for key {key_handle}: {e}")
        except asyncio.TimeoutError:
            logger.warning(f"Signer timed out after {self.timeout}s for key {key_handle}")
            raise SignerUnavailable(f"Signer timed out after {self.timeout}s for key {key_handle}")

    async def sign(self, tx: UnsignedTransaction) -> str:
        """Sign a transaction.

        Args:
            tx: Transaction to sign

        Returns:
            0x-prefixed hex of the signed transaction

        Raises:
            MalformedRequest, EncodingOverflow: Invalid transaction (signer not called)
            SignerUnavailable: Connector failure or timeout
            SignatureMismatch: Signature does not recover to the signer key
        """
        payload = encode_unsigned(tx)
        digest = keccak_digest(payload)

        raw_signature = await self._sign_digest(digest)
        raw_signature.validate()

        signature, flipped = raw_signature.normalized()
        if flipped:
            logger.debug(f"Normalized high-s signature from key {self.identity.key_handle}")

        recovery_id = resolve_recovery_id(digest, signature, self.identity.public_key)
        v = encode_v(recovery_id, tx.chain_id)

        signed = encode_signed(tx, v, signature.r, signature.s)
        logger.info(
            f"Signed tx for key {self.identity.key_handle}: chain={tx.chain_id} nonce={tx.nonce}"
        )
        return "0x" + signed.hex()

    async def sign_request(self, fields: Mapping[str, Any]) -> str:
        """Decode an eth_signTransaction field map and sign it."""
        tx = decode_request_fields(fields)

        sender = fields.get("from")
        if isinstance(sender, str) and sender.lower() != self.address.lower():
            logger.warning(
                f"Request from={sender} does not match signer {self.address}; signing as signer"
            )

        return await self.sign(tx)

    def __repr__(self) -> str:
        return f"TransactionSigner(key={self.identity.key_handle}, address={self.address})"
