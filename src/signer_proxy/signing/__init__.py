"""Transaction signing services.

Provides the signing pipeline and its signer connectors:
- TransactionSigner: encode, hash, sign digest, recover v, re-encode
- LocalKeyConnector: In-memory keys (development/tests)
- YubiHSMConnector: YubiHSM 2 over USB or HTTP
- KMSConnector: AWS KMS-backed signing
- PKCS11Connector: Generic PKCS#11 HSM
"""

from signer_proxy.signing.base import (
    ConnectorError,
    ConnectorType,
    KeyNotFoundError,
    SignerConnector,
)
from signer_proxy.signing.factory import create_connector, get_connector
from signer_proxy.signing.local import LocalKeyConnector
from signer_proxy.signing.recovery import recover_public_key, resolve_recovery_id
from signer_proxy.signing.registry import SignerRegistry
from signer_proxy.signing.signer import SignerIdentity, TransactionSigner

__all__ = [
    "ConnectorError",
    "ConnectorType",
    "KeyNotFoundError",
    "LocalKeyConnector",
    "SignerConnector",
    "SignerIdentity",
    "SignerRegistry",
    "TransactionSigner",
    "create_connector",
    "get_connector",
    "recover_public_key",
    "resolve_recovery_id",
]
