"""Tests for signer connectors and the connector factory.

Vendor SDKs are replaced with mocks; no device or cloud access is needed.
"""

import hashlib
import struct
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from cryptography.hazmat.primitives.serialization import load_der_public_key
from ecdsa import NIST256p, SECP256k1, SigningKey
from ecdsa.util import sigencode_der, sigencode_string

from signer_proxy.config import Settings
from signer_proxy.errors import MalformedRequest
from signer_proxy.signing.base import (
    ConnectorError,
    ConnectorType,
    KeyNotFoundError,
    public_key_from_cryptography,
    public_key_from_uncompressed,
)
from signer_proxy.signing.factory import (
    create_connector,
    get_connector,
    get_connector_info,
    get_connector_type,
    reset_connector,
)
from signer_proxy.signing.kms import KMSConnector
from signer_proxy.signing.local import DEFAULT_MOCK_KEYS, LocalKeyConnector
from signer_proxy.signing.signer import TransactionSigner
from signer_proxy.signing.yubihsm import YubiHSMConnector
from signer_proxy.transaction.hashing import digest

from tests.conftest import TEST_ADDRESS, TEST_PRIVATE_KEY

SIGNING_KEY = SigningKey.from_string(TEST_PRIVATE_KEY, curve=SECP256k1)
PUBLIC_KEY_DER = SIGNING_KEY.get_verifying_key().to_der()


def der_sign(message_digest: bytes) -> bytes:
    return SIGNING_KEY.sign_digest_deterministic(
        message_digest, hashfunc=hashlib.sha256, sigencode=sigencode_der
    )


def raw_sign(message_digest: bytes) -> bytes:
    return SIGNING_KEY.sign_digest_deterministic(
        message_digest, hashfunc=hashlib.sha256, sigencode=sigencode_string
    )


def client_error(code: str, operation: str = "Sign") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestPublicKeyHelpers:
    """Tests for public key conversion."""

    def test_uncompressed_with_prefix(self):
        point = SIGNING_KEY.get_verifying_key().to_string()
        assert public_key_from_uncompressed(b"\x04" + point).to_checksum_address() == TEST_ADDRESS
        assert public_key_from_uncompressed(point).to_checksum_address() == TEST_ADDRESS

    def test_uncompressed_wrong_length(self):
        with pytest.raises(ConnectorError):
            public_key_from_uncompressed(b"\x04" * 33)

    def test_cryptography_key(self):
        public_key = load_der_public_key(PUBLIC_KEY_DER)
        assert public_key_from_cryptography(public_key).to_checksum_address() == TEST_ADDRESS

    def test_cryptography_wrong_curve(self):
        p256 = SigningKey.generate(curve=NIST256p).get_verifying_key().to_der()
        with pytest.raises(ConnectorError):
            public_key_from_cryptography(load_der_public_key(p256))


class TestLocalKeyConnector:
    """Tests for the in-memory connector."""

    def test_default_keys(self):
        connector = LocalKeyConnector()
        assert connector.key_handles == sorted(DEFAULT_MOCK_KEYS)
        assert connector.connector_type == ConnectorType.MOCK
        assert connector.session_id.startswith("mock:")

    def test_add_key_returns_address(self):
        connector = LocalKeyConnector({})
        assert connector.add_key("x", TEST_PRIVATE_KEY) == TEST_ADDRESS

    def test_invalid_private_key(self):
        with pytest.raises(ValueError):
            LocalKeyConnector({"1": b"\x00" * 31})

    async def test_fetch_public_key(self, connector):
        public_key = await connector.fetch_public_key("7")
        assert public_key.to_checksum_address() == TEST_ADDRESS

    async def test_unknown_key(self, connector):
        with pytest.raises(KeyNotFoundError):
            await connector.fetch_public_key("missing")
        with pytest.raises(KeyNotFoundError):
            await connector.sign_digest("missing", digest(b""))

    async def test_sign_digest(self, connector):
        message = digest(b"hello")
        signature = await connector.sign_digest("7", message)
        assert signature.to_bytes() == raw_sign(message)

    async def test_digest_length(self, connector):
        with pytest.raises(ConnectorError):
            await connector.sign_digest("7", b"\x00" * 31)

    async def test_parse_key_handle(self, connector):
        assert connector.parse_key_handle(" 7 ") == "7"
        with pytest.raises(MalformedRequest):
            connector.parse_key_handle("  ")


class TestKMSConnector:
    """Tests for the AWS KMS connector with a mocked client."""

    @pytest.fixture
    def kms_client(self):
        client = MagicMock()
        client.get_public_key.return_value = {
            "PublicKey": PUBLIC_KEY_DER,
            "KeySpec": "ECC_SECG_P256K1",
        }
        client.sign.side_effect = lambda **kwargs: {"Signature": der_sign(kwargs["Message"])}
        return client

    @pytest.fixture
    def kms(self, kms_client):
        return KMSConnector(region="eu-west-1", client=kms_client)

    def test_session_id(self, kms):
        assert kms.session_id == "aws_kms:eu-west-1"

    async def test_fetch_public_key(self, kms, kms_client):
        public_key = await kms.fetch_public_key("alias/signer")
        assert public_key.to_checksum_address() == TEST_ADDRESS
        kms_client.get_public_key.assert_called_once_with(KeyId="alias/signer")

    async def test_sign_digest(self, kms, kms_client):
        message = digest(b"hello")
        signature = await kms.sign_digest("alias/signer", message)

        assert signature.to_bytes() == raw_sign(message)
        kms_client.sign.assert_called_once_with(
            KeyId="alias/signer",
            Message=message,
            MessageType="DIGEST",
            SigningAlgorithm="ECDSA_SHA_256",
        )

    async def test_full_pipeline(self, kms, signer, sepolia_tx):
        """KMS-backed signing matches in-memory signing of the same key."""
        kms_signer = await TransactionSigner.create(kms, "alias/signer")

        assert kms_signer.address == TEST_ADDRESS
        assert await kms_signer.sign(sepolia_tx) == await signer.sign(sepolia_tx)

    async def test_key_not_found(self, kms, kms_client):
        kms_client.get_public_key.side_effect = client_error("NotFoundException", "GetPublicKey")

        with pytest.raises(KeyNotFoundError):
            await kms.fetch_public_key("alias/missing")
        with pytest.raises(MalformedRequest):
            await TransactionSigner.create(kms, "alias/missing")

    async def test_access_denied(self, kms, kms_client):
        kms_client.sign.side_effect = client_error("AccessDeniedException")

        with pytest.raises(ConnectorError, match="Access denied"):
            await kms.sign_digest("alias/signer", digest(b""))

    async def test_undecodable_signature(self, kms, kms_client):
        kms_client.sign.side_effect = lambda **kwargs: {"Signature": b"\x01" * 70}

        with pytest.raises(ConnectorError, match="unusable signature"):
            await kms.sign_digest("alias/signer", digest(b""))

    async def test_wrong_key_spec(self, kms, kms_client):
        kms_client.get_public_key.return_value = {
            "PublicKey": PUBLIC_KEY_DER,
            "KeySpec": "ECC_NIST_P256",
        }
        with pytest.raises(ConnectorError):
            await kms.fetch_public_key("alias/signer")

    async def test_health_check(self, kms, kms_client):
        assert await kms.health_check() is True

        kms_client.list_keys.side_effect = client_error("AccessDeniedException", "ListKeys")
        assert await kms.health_check() is False


class TestYubiHSMConnector:
    """Tests for the YubiHSM connector with a mocked session."""

    @pytest.fixture
    def session(self):
        session = MagicMock()
        session.send_secure_cmd.side_effect = lambda command, data: der_sign(data[2:])
        return session

    @pytest.fixture
    def yubihsm(self, session):
        connector = YubiHSMConnector("http://127.0.0.1:12345", auth_key_id=1, password="password")
        connector._session = session
        return connector

    @pytest.fixture
    def asymmetric_key(self):
        with patch("signer_proxy.signing.yubihsm.AsymmetricKey") as key_class:
            key_class.return_value.get_public_key.return_value = load_der_public_key(PUBLIC_KEY_DER)
            yield key_class

    def test_password_required(self):
        with pytest.raises(ValueError):
            YubiHSMConnector("http://127.0.0.1:12345", auth_key_id=1, password="")

    def test_session_id(self, yubihsm):
        assert yubihsm.session_id == "yubihsm:http://127.0.0.1:12345#1"

    @pytest.mark.parametrize("handle,expected", [("7", "7"), ("0x0007", "7"), ("007", "7"), ("65535", "65535")])
    def test_parse_key_handle(self, yubihsm, handle, expected):
        assert yubihsm.parse_key_handle(handle) == expected

    @pytest.mark.parametrize("handle", ["abc", "0", "65536", "-1", "0x"])
    def test_parse_invalid_key_handle(self, yubihsm, handle):
        with pytest.raises(MalformedRequest):
            yubihsm.parse_key_handle(handle)

    async def test_fetch_public_key(self, yubihsm, session, asymmetric_key):
        public_key = await yubihsm.fetch_public_key("7")

        assert public_key.to_checksum_address() == TEST_ADDRESS
        asymmetric_key.assert_called_once_with(session, 7)

    async def test_sign_digest_sends_raw_digest(self, yubihsm, session):
        from yubihsm.defs import COMMAND

        message = digest(b"hello")
        signature = await yubihsm.sign_digest("7", message)

        assert signature.to_bytes() == raw_sign(message)
        session.send_secure_cmd.assert_called_once_with(
            COMMAND.SIGN_ECDSA, struct.pack("!H", 7) + message
        )

    async def test_full_pipeline(self, yubihsm, asymmetric_key, signer, sepolia_tx):
        hsm_signer = await TransactionSigner.create(yubihsm, "7")
        assert await hsm_signer.sign(sepolia_tx) == await signer.sign(sepolia_tx)

    async def test_object_not_found(self, yubihsm, asymmetric_key):
        from yubihsm.defs import ERROR
        from yubihsm.exceptions import YubiHsmDeviceError

        asymmetric_key.return_value.get_public_key.side_effect = YubiHsmDeviceError(
            ERROR.OBJECT_NOT_FOUND
        )
        with pytest.raises(KeyNotFoundError):
            await yubihsm.fetch_public_key("9")

    async def test_transport_error_resets_session(self, yubihsm, session):
        from yubihsm.exceptions import YubiHsmError

        session.send_secure_cmd.side_effect = YubiHsmError("connection lost")

        with pytest.raises(ConnectorError):
            await yubihsm.sign_digest("7", digest(b""))
        assert yubihsm._session is None
        session.close.assert_called_once()

    def test_generate_key(self, yubihsm, session, asymmetric_key):
        from yubihsm.defs import ALGORITHM, CAPABILITY

        generated = MagicMock(id=0x10)
        generated.get_public_key.return_value = load_der_public_key(PUBLIC_KEY_DER)
        asymmetric_key.generate.return_value = generated

        key_id, address = yubihsm.generate_key(label="signer")

        assert key_id == 0x10
        assert address == TEST_ADDRESS
        asymmetric_key.generate.assert_called_once_with(
            session, 0, "signer", 0xFFFF, CAPABILITY.SIGN_ECDSA, ALGORITHM.EC_K256
        )

    def test_generate_key_label_too_long(self, yubihsm):
        with pytest.raises(ValueError):
            yubihsm.generate_key(label="x" * 41)


class TestPKCS11Connector:
    """Tests for the PKCS#11 connector with a mocked session."""

    @pytest.fixture
    def pkcs11_module(self):
        return pytest.importorskip("pkcs11")

    @pytest.fixture
    def hsm(self, pkcs11_module):
        from signer_proxy.signing.hsm import PKCS11Connector

        public_key = MagicMock()
        point = SIGNING_KEY.get_verifying_key().to_string()
        public_key.__getitem__.return_value = b"\x04\x41\x04" + point

        private_key = MagicMock()
        private_key.sign.side_effect = lambda data, mechanism: raw_sign(data)

        def get_key(object_class, **lookup):
            if object_class == pkcs11_module.ObjectClass.PUBLIC_KEY:
                return public_key
            return private_key

        session = MagicMock()
        session.get_key.side_effect = get_key

        connector = PKCS11Connector("/usr/lib/softhsm/libsofthsm2.so", "1234", slot=0)
        connector._session = session
        return connector

    def test_missing_settings(self, pkcs11_module):
        from signer_proxy.signing.hsm import PKCS11Connector

        with pytest.raises(ValueError):
            PKCS11Connector(None, "1234")
        with pytest.raises(ValueError):
            PKCS11Connector("/lib.so", None)

    def test_parse_ec_point(self, pkcs11_module):
        from signer_proxy.signing.hsm import parse_ec_point

        point = b"\x04" + b"\x01" * 64
        assert parse_ec_point(b"\x04\x41" + point) == point
        assert parse_ec_point(point) == point

    async def test_full_pipeline(self, hsm, signer, sepolia_tx):
        hsm_signer = await TransactionSigner.create(hsm, "signer-key")

        assert hsm_signer.address == TEST_ADDRESS
        assert await hsm_signer.sign(sepolia_tx) == await signer.sign(sepolia_tx)

    async def test_lookup_by_id(self, hsm):
        await hsm.fetch_public_key("id:0a0b")

        _, kwargs = hsm._session.get_key.call_args
        assert kwargs["id"] == b"\x0a\x0b"

    async def test_key_not_found(self, hsm, pkcs11_module):
        from pkcs11.exceptions import NoSuchKey

        hsm._session.get_key.side_effect = NoSuchKey()
        with pytest.raises(KeyNotFoundError):
            await hsm.fetch_public_key("missing")

    async def test_wrong_length_signature(self, hsm):
        hsm._session.get_key.side_effect = None
        hsm._session.get_key.return_value.sign.side_effect = None
        hsm._session.get_key.return_value.sign.return_value = b"\x01" * 65

        with pytest.raises(ConnectorError, match="unusable signature"):
            await hsm.sign_digest("signer-key", digest(b""))


class TestConnectorFactory:
    """Tests for backend selection."""

    def test_connector_type(self):
        assert get_connector_type(Settings(signer_backend="AWS-KMS", _env_file=None)) == ConnectorType.AWS_KMS
        assert get_connector_type(Settings(signer_backend="mock", _env_file=None)) == ConnectorType.MOCK

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            get_connector_type(Settings(signer_backend="ledger", _env_file=None))

    def test_create_mock(self):
        settings = Settings(
            signer_backend="mock", mock_keys=f"5:{TEST_PRIVATE_KEY.hex()}", _env_file=None
        )
        connector = create_connector(settings)

        assert isinstance(connector, LocalKeyConnector)
        assert connector.key_handles == ["5"]

    def test_create_kms(self):
        connector = create_connector(
            Settings(signer_backend="aws_kms", aws_region="ap-south-1", _env_file=None)
        )
        assert isinstance(connector, KMSConnector)
        assert connector.region == "ap-south-1"

    def test_create_yubihsm(self):
        settings = Settings(
            signer_backend="yubihsm",
            yubihsm_mode="http",
            yubihsm_http_address="10.0.0.2",
            yubihsm_http_port=12345,
            yubihsm_password="password",
            _env_file=None,
        )
        connector = create_connector(settings)

        assert isinstance(connector, YubiHSMConnector)
        assert connector.url == "http://10.0.0.2:12345"

    def test_yubihsm_missing_password(self):
        settings = Settings(
            signer_backend="yubihsm", yubihsm_device_serial_id="123", _env_file=None
        )
        with pytest.raises(ValueError):
            create_connector(settings)

    async def test_connector_info(self, connector):
        info = await get_connector_info(connector)
        assert info == {"type": "mock", "healthy": True, "class": "LocalKeyConnector"}

    def test_get_connector_is_shared(self):
        reset_connector()
        try:
            first = get_connector()
            assert get_connector() is first

            reset_connector()
            assert get_connector() is not first
        finally:
            reset_connector()
