"""Signer connector factory.

Creates the appropriate signer connector based on configuration.
"""

import logging
from typing import Optional

from signer_proxy.config import SIGNER_BACKENDS, Settings, get_settings
from signer_proxy.signing.base import ConnectorType, SignerConnector

logger = logging.getLogger(__name__)


def get_connector_type(settings: Optional[Settings] = None) -> ConnectorType:
    """Determine which connector to use from SIGNER_BACKEND.

    Raises:
        ValueError: If the backend name is unknown
    """
    settings = settings or get_settings()
    backend = settings.backend
    if backend not in SIGNER_BACKENDS:
        raise ValueError(
            f"Unknown signer backend: {settings.signer_backend} "
            f"(expected one of {', '.join(SIGNER_BACKENDS)})"
        )
    return ConnectorType(backend)


def create_connector(settings: Optional[Settings] = None) -> SignerConnector:
    """Build a new connector for the configured backend.

    Raises:
        ValueError: If required backend settings are missing
    """
    settings = settings or get_settings()
    connector_type = get_connector_type(settings)
    logger.info(f"Initializing {connector_type.value} connector")

    if connector_type == ConnectorType.YUBIHSM:
        from signer_proxy.signing.yubihsm import YubiHSMConnector
        return YubiHSMConnector.from_settings(settings)

    elif connector_type == ConnectorType.AWS_KMS:
        from signer_proxy.signing.kms import KMSConnector
        return KMSConnector.from_settings(settings)

    elif connector_type == ConnectorType.PKCS11:
        from signer_proxy.signing.hsm import PKCS11Connector
        return PKCS11Connector.from_settings(settings)

    else:  # MOCK
        from signer_proxy.signing.local import LocalKeyConnector
        if settings.is_production:
            logger.warning("Mock signer backend in production - keys are held in memory")
        return LocalKeyConnector(settings.get_mock_keys() or None)


_connector_instance: Optional[SignerConnector] = None


def get_connector() -> SignerConnector:
    """Get the process-wide connector (one device session per process)."""
    global _connector_instance

    if _connector_instance is None:
        _connector_instance = create_connector()
    return _connector_instance


def reset_connector():
    """Reset the connector instance (for testing)."""
    global _connector_instance
    _connector_instance = None


async def get_connector_info(connector: SignerConnector) -> dict:
    """Get information about a connector.

    Returns:
        Dict with connector type, health status and class
    """
    health = await connector.health_check()

    return {
        "type": connector.connector_type.value,
        "healthy": health,
        "class": connector.__class__.__name__,
    }
