"""AWS KMS signer connector.

Uses AWS Key Management Service for secure key storage and signing.
KMS keys never leave AWS - signing happens in the cloud.

Setup:
1. Create an asymmetric key in AWS KMS (ECC_SECG_P256K1, SIGN_VERIFY)
2. Configure AWS credentials (IAM role, access keys, etc.)
3. Call /key/{key_id} with a key id, ARN or alias

KMS returns DER signatures without a recovery id and frequently in high-s
form.

Reference:
- https://docs.aws.amazon.com/kms/latest/APIReference/API_Sign.html
"""

import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.hazmat.primitives.serialization import load_der_public_key
from eth_keys import keys

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

SECP256K1_KEY_SPEC = "ECC_SECG_P256K1"


class KMSConnector(SignerConnector):
    """AWS KMS connector.

    Keys are identified by:
    - AWS KMS Key ID (e.g., "1234abcd-12ab-34cd-56ef-1234567890ab")
    - AWS KMS Key ARN
    - AWS KMS Key Alias (e.g., "alias/my-signing-key")
    """

    def __init__(self, region: Optional[str] = None, client=None):
        """Initialize KMS connector.

        Args:
            region: AWS region (defaults to us-east-1)
            client: Pre-built boto3 KMS client
        """
        super().__init__(ConnectorType.AWS_KMS)
        self.region = region or "us-east-1"
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "KMSConnector":
        return cls(region=settings.aws_region)

    @property
    def session_id(self) -> str:
        return f"aws_kms:{self.region}"

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client("kms", region_name=self.region)
        return self._client

    def _call(self, key_handle: str, operation):
        """Run a KMS API call mapping AWS errors to connector errors."""
        try:
            return operation(self._get_client())
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "NotFoundException":
                raise KeyNotFoundError(f"KMS key not found: {key_handle}")
            if error_code == "AccessDeniedException":
                raise ConnectorError(f"Access denied to KMS key {key_handle}. Check IAM permissions.")
            logger.error(f"KMS error for key {key_handle}: {e}")
            raise ConnectorError(f"KMS error ({error_code}): {e}")
        except BotoCoreError as e:
            logger.error(f"KMS transport error for key {key_handle}: {e}")
            raise ConnectorError(f"KMS transport error: {e}")

    async def fetch_public_key(self, key_handle: str) -> keys.PublicKey:
        """Get public key from KMS."""
        response = await self._run_blocking(
            lambda: self._call(key_handle, lambda client: client.get_public_key(KeyId=key_handle))
        )

        key_spec = response.get("KeySpec") or response.get("CustomerMasterKeySpec")
        if key_spec and key_spec != SECP256K1_KEY_SPEC:
            raise ConnectorError(f"KMS key {key_handle} is {key_spec}, expected {SECP256K1_KEY_SPEC}")

        try:
            public_key = load_der_public_key(response["PublicKey"])
        except (KeyError, ValueError) as e:
            raise ConnectorError(f"Cannot parse KMS public key for {key_handle}: {e}")
        return public_key_from_cryptography(public_key)

    async def sign_digest(self, key_handle: str, digest: bytes) -> RawSignature:
        """Sign a digest using AWS KMS."""
        if len(digest) != DIGEST_SIZE:
            raise ConnectorError(f"Digest must be {DIGEST_SIZE} bytes, got {len(digest)}")

        response = await self._run_blocking(
            lambda: self._call(
                key_handle,
                lambda client: client.sign(
                    KeyId=key_handle,
                    Message=digest,
                    MessageType="DIGEST",
                    SigningAlgorithm="ECDSA_SHA_256",
                ),
            )
        )
        try:
            return RawSignature.from_der(response["Signature"])
        except (KeyError, ValueError) as e:
            raise ConnectorError(f"KMS returned an unusable signature for {key_handle}: {e}")

    async def health_check(self) -> bool:
        """Check if KMS is accessible."""
        try:
            await self._run_blocking(
                lambda: self._call("*", lambda client: client.list_keys(Limit=1))
            )
            return True
        except ConnectorError as e:
            logger.warning(f"KMS health check failed: {e}")
            return False
