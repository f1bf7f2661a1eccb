"""In-memory signer connector.

Holds secp256k1 private keys in memory and exposes them through the same raw
"sign this digest" primitive as an HSM. Suitable for:
- Development without a device
- Tests of the full signing pipeline

Signatures use RFC 6979 deterministic nonces and are returned exactly as
python-ecdsa produces them, high-s included, like a raw HSM primitive.

WARNING: Private keys are stored in memory. Use an HSM or KMS for anything
holding real funds.
"""

import hashlib
import logging
import uuid
from typing import Optional

from ecdsa import SECP256k1, SigningKey
from ecdsa.util import sigencode_string
from eth_keys import keys

from signer_proxy.signing.base import (
    ConnectorError,
    ConnectorType,
    KeyNotFoundError,
    SignerConnector,
)
from signer_proxy.transaction.hashing import DIGEST_SIZE
from signer_proxy.transaction.models import RawSignature

logger = logging.getLogger(__name__)

# Development keys, never use with real funds
DEFAULT_MOCK_KEYS: dict[str, bytes] = {
    "1": bytes.fromhex("25b1759e8eabc06b7d097550dffd7d8c92407fb818c5e9e33b81ef92d4afa2b7"),
    "2": bytes.fromhex("5bcaa0de81a26da01ba9e347e8093f2463a3f8e35626914c4984cae19b38288c"),
}


class LocalKeyConnector(SignerConnector):
    """Signer connector backed by in-memory private keys."""

    def __init__(self, private_keys: Optional[dict[str, bytes]] = None, session_id: Optional[str] = None):
        """Initialize the connector.

        Args:
            private_keys: key handle -> 32-byte private key (defaults to DEFAULT_MOCK_KEYS)
            session_id: Session identifier (defaults to a unique mock id)
        """
        super().__init__(ConnectorType.MOCK)
        self._session_id = session_id or f"mock:{uuid.uuid4().hex[:12]}"
        self._keys: dict[str, SigningKey] = {}

        for key_handle, private_key in (private_keys or DEFAULT_MOCK_KEYS).items():
            self.add_key(key_handle, private_key)

    @property
    def session_id(self) -> str:
        return self._session_id

    def add_key(self, key_handle: str, private_key: bytes) -> str:
        """Register a private key and return its address."""
        try:
            signing_key = SigningKey.from_string(private_key, curve=SECP256k1)
        except Exception as e:
            raise ValueError(f"Invalid private key for key {key_handle}: {e}")
        self._keys[str(key_handle)] = signing_key
        address = keys.PublicKey(signing_key.get_verifying_key().to_string()).to_checksum_address()
        logger.info(f"Loaded mock key {key_handle} ({address})")
        return address

    @property
    def key_handles(self) -> list[str]:
        return sorted(self._keys)

    def _get_key(self, key_handle: str) -> SigningKey:
        try:
            return self._keys[str(key_handle)]
        except KeyError:
            raise KeyNotFoundError(f"No mock key with id {key_handle}")

    async def fetch_public_key(self, key_handle: str) -> keys.PublicKey:
        """Get public key from private key."""
        signing_key = self._get_key(key_handle)
        return keys.PublicKey(signing_key.get_verifying_key().to_string())

    async def sign_digest(self, key_handle: str, digest: bytes) -> RawSignature:
        """Sign a digest with RFC 6979 deterministic ECDSA."""
        signing_key = self._get_key(key_handle)
        if len(digest) != DIGEST_SIZE:
            raise ConnectorError(f"Digest must be {DIGEST_SIZE} bytes, got {len(digest)}")

        signature = signing_key.sign_digest_deterministic(
            digest,
            hashfunc=hashlib.sha256,
            sigencode=sigencode_string,
        )
        return RawSignature.from_bytes(signature)
