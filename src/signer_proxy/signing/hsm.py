"""PKCS#11 signer connector.

Provides interface for PKCS#11 compliant HSMs such as:
- AWS CloudHSM
- Thales Luna HSM
- SafeNet HSM
- SoftHSM (testing)

Setup:
1. Install PKCS#11 library for your HSM
2. Set HSM_PKCS11_LIB environment variable to library path
3. Set HSM_PIN for HSM user PIN
4. Set HSM_SLOT (optional, defaults to the first slot with a token)

Key handles are object labels, or "id:<hex>" to select by CKA_ID.
CKM_ECDSA signs the digest as given and returns raw r || s.

Reference:
- https://docs.aws.amazon.com/cloudhsm/latest/userguide/pkcs11-library.html
"""

import logging
from typing import Optional

import pkcs11
from eth_keys import keys
from pkcs11 import Attribute, Mechanism, ObjectClass
from pkcs11.exceptions import MultipleObjectsReturned, NoSuchKey, PKCS11Error

from signer_proxy.signing.base import (
    ConnectorError,
    ConnectorType,
    KeyNotFoundError,
    SignerConnector,
    public_key_from_uncompressed,
)
from signer_proxy.transaction.hashing import DIGEST_SIZE
from signer_proxy.transaction.models import RawSignature

logger = logging.getLogger(__name__)


def parse_ec_point(ec_point: bytes) -> bytes:
    """Strip the DER OCTET STRING wrapper from CKA_EC_POINT if present."""
    # EC_POINT is usually DER-encoded: 04 41 || 04 || x || y
    if ec_point[0:2] == b"\x04\x41" and len(ec_point) == 67:
        return ec_point[2:]
    return ec_point


class PKCS11Connector(SignerConnector):
    """PKCS#11 token connector holding one logged-in session."""

    def __init__(self, pkcs11_lib: Optional[str], pin: Optional[str], slot: int = 0):
        """Initialize the connector.

        Args:
            pkcs11_lib: Path to PKCS#11 library
            pin: HSM user PIN
            slot: Index into the slots that have a token present
        """
        super().__init__(ConnectorType.PKCS11)
        if not pkcs11_lib:
            raise ValueError("HSM_PKCS11_LIB environment variable not set")
        if not pin:
            raise ValueError("HSM_PIN environment variable not set")

        self.pkcs11_lib = pkcs11_lib
        self.slot = slot
        self._pin = pin
        self._session = None

    @classmethod
    def from_settings(cls, settings) -> "PKCS11Connector":
        return cls(settings.hsm_pkcs11_lib, settings.hsm_pin, settings.hsm_slot)

    @property
    def session_id(self) -> str:
        return f"pkcs11:{self.pkcs11_lib}#{self.slot}"

    def _get_session(self):
        """Get or create HSM session (blocking)."""
        if self._session is not None:
            return self._session

        try:
            lib = pkcs11.lib(self.pkcs11_lib)
            slots = lib.get_slots(token_present=True)
            if self.slot >= len(slots):
                raise ConnectorError(f"No token in slot {self.slot} ({len(slots)} available)")
            token = slots[self.slot].get_token()
            self._session = token.open(user_pin=self._pin)
        except (PKCS11Error, RuntimeError, OSError) as e:
            logger.error(f"Failed to open HSM session: {e}")
            raise ConnectorError(f"HSM session failed: {e}")

        logger.info(f"PKCS#11 session opened (slot {self.slot})")
        return self._session

    def _reset(self) -> None:
        session = self._session
        self._session = None
        if session is not None:
            try:
                session.close()
            except PKCS11Error as e:
                logger.debug(f"Ignoring error while closing PKCS#11 session: {e}")

    def _get_key(self, session, key_handle: str, object_class: ObjectClass):
        """Look up a key by label or id:<hex>.

        Raises:
            KeyNotFoundError: If no unique key matches
        """
        if key_handle.startswith("id:"):
            try:
                lookup = {"id": bytes.fromhex(key_handle[3:])}
            except ValueError:
                raise KeyNotFoundError(f"Invalid HSM key id: {key_handle}")
        else:
            lookup = {"label": key_handle}

        try:
            return session.get_key(object_class=object_class, **lookup)
        except NoSuchKey:
            raise KeyNotFoundError(f"HSM key not found: {key_handle}")
        except MultipleObjectsReturned:
            raise KeyNotFoundError(f"HSM key is ambiguous: {key_handle}")

    def _call(self, operation):
        session = self._get_session()
        try:
            return operation(session)
        except PKCS11Error as e:
            self._reset()
            raise ConnectorError(f"PKCS#11 error: {e}")

    async def fetch_public_key(self, key_handle: str) -> keys.PublicKey:
        """Get public key from HSM."""
        ec_point = await self._run_blocking(
            lambda: self._call(
                lambda session: self._get_key(session, key_handle, ObjectClass.PUBLIC_KEY)[
                    Attribute.EC_POINT
                ]
            )
        )
        return public_key_from_uncompressed(parse_ec_point(bytes(ec_point)))

    async def sign_digest(self, key_handle: str, digest: bytes) -> RawSignature:
        """Sign digest using CKM_ECDSA."""
        if len(digest) != DIGEST_SIZE:
            raise ConnectorError(f"Digest must be {DIGEST_SIZE} bytes, got {len(digest)}")

        signature = await self._run_blocking(
            lambda: self._call(
                lambda session: self._get_key(session, key_handle, ObjectClass.PRIVATE_KEY).sign(
                    digest, mechanism=Mechanism.ECDSA
                )
            )
        )
        # PKCS#11 returns raw r||s format (64 bytes for secp256k1)
        try:
            return RawSignature.from_bytes(bytes(signature))
        except ValueError as e:
            raise ConnectorError(f"HSM returned an unusable signature for {key_handle}: {e}")

    async def open(self) -> None:
        await self._run_blocking(self._get_session)

    async def health_check(self) -> bool:
        """Check if HSM is accessible."""
        try:
            await self._run_blocking(self._get_session)
            return True
        except ConnectorError as e:
            logger.warning(f"HSM health check failed: {e}")
            return False

    async def close(self):
        """Close HSM session."""
        await self._run_blocking(self._reset)
