"""YubiHSM 2 signer connector.

Talks to the device through python-yubihsm, either directly over USB or via
yubihsm-connector over HTTP:
- usb:  yhusb://serial=<device serial>
- http: http://<address>:<port>

The device signs raw digests with SIGN_ECDSA and returns a DER signature.
It returns no recovery id and does not guarantee low-s.

Setup:
1. Create an authentication key with the sign-ecdsa capability
2. Set YUBIHSM_AUTH_KEY_ID and YUBIHSM_PASSWORD
3. Generate a signing key: signer-proxy generate-key --label my-key
"""

import logging
import struct
from typing import Optional

from eth_keys import keys
from yubihsm import YubiHsm
from yubihsm.defs import ALGORITHM, CAPABILITY, COMMAND, ERROR
from yubihsm.exceptions import YubiHsmDeviceError, YubiHsmError
from yubihsm.objects import AsymmetricKey

from signer_proxy.errors import MalformedRequest
from signer_proxy.signing.base import (
    ConnectorError,
    ConnectorType,
    KeyNotFoundError,
    SignerConnector,
    public_key_from_cryptography,
)
from signer_proxy.transaction.hashing import DIGEST_SIZE
from signer_proxy.transaction.models import RawSignature

logger = logging.getLogger(__name__)

ALL_DOMAINS = 0xFFFF
MAX_LABEL_LENGTH = 40


class YubiHSMConnector(SignerConnector):
    """YubiHSM 2 connector holding one authenticated session.

    Key handles are 16-bit object ids of asymmetric EC_K256 keys.
    """

    def __init__(self, url: str, auth_key_id: int, password: str):
        """Initialize the connector.

        Args:
            url: python-yubihsm connector URL (yhusb://... or http://...)
            auth_key_id: Authentication key object id
            password: Authentication key password
        """
        super().__init__(ConnectorType.YUBIHSM)
        if not password:
            raise ValueError("YUBIHSM_PASSWORD is not set")

        self.url = url
        self.auth_key_id = auth_key_id
        self._password = password

        self._hsm: Optional[YubiHsm] = None
        self._session = None

    @classmethod
    def from_settings(cls, settings) -> "YubiHSMConnector":
        return cls(
            url=settings.get_yubihsm_url(),
            auth_key_id=settings.yubihsm_auth_key_id,
            password=settings.yubihsm_password,
        )

    @property
    def session_id(self) -> str:
        return f"yubihsm:{self.url}#{self.auth_key_id}"

    def parse_key_handle(self, key_handle: str) -> str:
        key_handle = super().parse_key_handle(key_handle)
        try:
            if key_handle.lower().startswith("0x"):
                object_id = int(key_handle[2:], 16)
            else:
                object_id = int(key_handle, 10)
        except ValueError:
            raise MalformedRequest(f"YubiHSM key id must be an integer: {key_handle}", field="key_id")
        if not 0 < object_id <= 0xFFFF:
            raise MalformedRequest(f"YubiHSM key id out of range: {key_handle}", field="key_id")
        return str(object_id)

    def _get_session(self):
        """Get or create the authenticated session (blocking)."""
        if self._session is not None:
            return self._session

        try:
            self._hsm = YubiHsm.connect(self.url)
            self._session = self._hsm.create_session_derived(self.auth_key_id, self._password)
        except YubiHsmError as e:
            self._reset()
            logger.error(f"Failed to open YubiHSM session: {e}")
            raise ConnectorError(f"YubiHSM session failed: {e}")

        logger.info(f"YubiHSM session opened ({self.url}, auth key {self.auth_key_id})")
        return self._session

    def _reset(self) -> None:
        """Drop the session so the next call re-authenticates."""
        session, hsm = self._session, self._hsm
        self._session = None
        self._hsm = None
        for resource in (session, hsm):
            if resource is None:
                continue
            try:
                resource.close()
            except YubiHsmError as e:
                logger.debug(f"Ignoring error while closing YubiHSM resource: {e}")

    def _call(self, key_handle: str, operation):
        """Run operation(session, object_id) mapping device errors."""
        object_id = int(self.parse_key_handle(key_handle))
        session = self._get_session()
        try:
            return operation(session, object_id)
        except YubiHsmDeviceError as e:
            if e.code == ERROR.OBJECT_NOT_FOUND:
                raise KeyNotFoundError(f"YubiHSM key not found: {object_id}")
            self._reset()
            raise ConnectorError(f"YubiHSM device error: {e}")
        except YubiHsmError as e:
            self._reset()
            raise ConnectorError(f"YubiHSM error: {e}")

    async def fetch_public_key(self, key_handle: str) -> keys.PublicKey:
        """Get public key of an asymmetric key."""
        public_key = await self._run_blocking(
            lambda: self._call(
                key_handle,
                lambda session, object_id: AsymmetricKey(session, object_id).get_public_key(),
            )
        )
        return public_key_from_cryptography(public_key)

    async def sign_digest(self, key_handle: str, digest: bytes) -> RawSignature:
        """Sign a raw digest with SIGN_ECDSA."""
        if len(digest) != DIGEST_SIZE:
            raise ConnectorError(f"Digest must be {DIGEST_SIZE} bytes, got {len(digest)}")

        # AsymmetricKey.sign_ecdsa hashes its input; send the digest as-is instead
        der_signature = await self._run_blocking(
            lambda: self._call(
                key_handle,
                lambda session, object_id: session.send_secure_cmd(
                    COMMAND.SIGN_ECDSA, struct.pack("!H", object_id) + digest
                ),
            )
        )
        try:
            return RawSignature.from_der(der_signature)
        except ValueError as e:
            raise ConnectorError(f"YubiHSM returned an unusable signature for {key_handle}: {e}")

    def generate_key(self, label: str = "", exportable: bool = False) -> tuple[int, str]:
        """Generate a secp256k1 signing key on the device (blocking).

        Args:
            label: Object label (max 40 characters)
            exportable: Allow export under wrap

        Returns:
            (object id, checksum address)
        """
        if len(label) > MAX_LABEL_LENGTH:
            raise ValueError(f"Label must be at most {MAX_LABEL_LENGTH} characters")

        capabilities = CAPABILITY.SIGN_ECDSA
        if exportable:
            capabilities |= CAPABILITY.EXPORTABLE_UNDER_WRAP

        session = self._get_session()
        try:
            key = AsymmetricKey.generate(
                session, 0, label, ALL_DOMAINS, capabilities, ALGORITHM.EC_K256
            )
            public_key = public_key_from_cryptography(key.get_public_key())
        except YubiHsmError as e:
            self._reset()
            raise ConnectorError(f"YubiHSM key generation failed: {e}")

        address = public_key.to_checksum_address()
        logger.info(f"Generated YubiHSM key {key.id} ({address})")
        return key.id, address

    async def open(self) -> None:
        await self._run_blocking(self._get_session)

    async def health_check(self) -> bool:
        """Check if the YubiHSM session can be opened."""
        try:
            await self._run_blocking(self._get_session)
            return True
        except ConnectorError as e:
            logger.warning(f"YubiHSM health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the YubiHSM session."""
        await self._run_blocking(self._reset)
