"""Application configuration using pydantic-settings.

Selects the signer backend and carries the connection settings for each
supported device or service.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SIGNER_BACKENDS = ("yubihsm", "aws_kms", "pkcs11", "mock")
YUBIHSM_MODES = ("usb", "http")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=3000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Log level when debug is off")

    # ======================
    # Signing
    # ======================
    signer_backend: str = Field(
        default="mock", description="Signer backend: yubihsm, aws_kms, pkcs11 or mock"
    )
    signing_key_id: Optional[str] = Field(
        default=None, description="Key handle used by the default endpoint"
    )
    signing_timeout: float = Field(
        default=30.0, description="Seconds to wait for the session lock and for the signer"
    )
    upstream_rpc_url: Optional[str] = Field(
        default=None, description="Node RPC URL for forwarding non-signing methods"
    )

    # ======================
    # YubiHSM
    # ======================
    yubihsm_mode: str = Field(default="usb", description="YubiHSM connection mode (usb or http)")
    yubihsm_device_serial_id: Optional[str] = Field(
        default=None, description="YubiHSM device serial (usb mode)"
    )
    yubihsm_http_address: Optional[str] = Field(
        default=None, description="yubihsm-connector address (http mode)"
    )
    yubihsm_http_port: Optional[int] = Field(
        default=None, description="yubihsm-connector port (http mode)"
    )
    yubihsm_auth_key_id: int = Field(default=1, description="YubiHSM authentication key ID")
    yubihsm_password: str = Field(default="", description="YubiHSM authentication password")

    # ======================
    # AWS KMS
    # ======================
    aws_region: str = Field(default="us-east-1", description="AWS region for KMS")

    # ======================
    # PKCS#11
    # ======================
    hsm_pkcs11_lib: Optional[str] = Field(default=None, description="Path to PKCS#11 library")
    hsm_pin: Optional[str] = Field(default=None, description="PKCS#11 user PIN")
    hsm_slot: int = Field(default=0, description="PKCS#11 slot index")

    # ======================
    # Mock
    # ======================
    mock_keys: str = Field(
        default="", description="Comma-separated id:private_key_hex pairs for the mock backend"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def backend(self) -> str:
        """Normalized signer backend name."""
        return self.signer_backend.strip().lower().replace("-", "_")

    def get_yubihsm_url(self) -> str:
        """Build the python-yubihsm connector URL for the configured mode.

        Raises:
            ValueError: If the settings required by the mode are missing
        """
        mode = self.yubihsm_mode.lower()
        if mode == "usb":
            if not self.yubihsm_device_serial_id:
                raise ValueError("USB mode requires YUBIHSM_DEVICE_SERIAL_ID")
            return f"yhusb://serial={self.yubihsm_device_serial_id}"
        if mode == "http":
            if not self.yubihsm_http_address or not self.yubihsm_http_port:
                raise ValueError("HTTP mode requires YUBIHSM_HTTP_ADDRESS and YUBIHSM_HTTP_PORT")
            address = self.yubihsm_http_address
            if "://" not in address:
                address = f"http://{address}"
            return f"{address}:{self.yubihsm_http_port}"
        raise ValueError(f"Unknown YubiHSM mode: {self.yubihsm_mode} (expected usb or http)")

    def get_mock_keys(self) -> dict[str, bytes]:
        """Parse MOCK_KEYS into a key handle -> private key mapping."""
        keys: dict[str, bytes] = {}
        for pair in self.mock_keys.split(","):
            pair = pair.strip()
            if not pair:
                continue
            key_id, _, key_hex = pair.partition(":")
            if not key_hex:
                raise ValueError(f"Invalid MOCK_KEYS entry: {key_id}")
            keys[key_id.strip()] = bytes.fromhex(key_hex.strip().removeprefix("0x"))
        return keys

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "signer_backend": self.backend,
            "signing_key_id": self.signing_key_id or "(not set)",
            "signing_timeout": self.signing_timeout,
            "upstream_rpc_url": self.upstream_rpc_url or "(not set)",
            "yubihsm": {
                "mode": self.yubihsm_mode,
                "device_serial_id": self.yubihsm_device_serial_id or "(not set)",
                "http_address": self.yubihsm_http_address or "(not set)",
                "http_port": self.yubihsm_http_port,
                "auth_key_id": self.yubihsm_auth_key_id,
                "password": "***" if self.yubihsm_password else "(not set)",
            },
            "aws_kms": {"region": self.aws_region},
            "pkcs11": {
                "lib": self.hsm_pkcs11_lib or "(not set)",
                "pin": "***" if self.hsm_pin else "(not set)",
                "slot": self.hsm_slot,
            },
            "mock_keys": "***" if self.mock_keys else "(built-in)",
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
