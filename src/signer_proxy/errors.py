"""Error taxonomy for the signing pipeline.

Every failure that leaves the signing core is one of:
- MalformedRequest: a field is missing or unparseable (caller must fix input)
- EncodingOverflow: a field exceeds its declared width (caller must fix input)
- SignerUnavailable: connector/transport/timeout failure (retryable)
- SignatureMismatch: recovery failed for every candidate (server-side fault)
"""

from typing import Any, Optional


class SignerProxyError(Exception):
    """Base class for errors surfaced by the signing core."""

    code: str = "signer_proxy_error"
    retryable: bool = False

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        """Structured form used by the API layer."""
        data: dict[str, Any] = {"kind": self.code, "retryable": self.retryable}
        if self.field:
            data["field"] = self.field
        return data


class MalformedRequest(SignerProxyError):
    """A required field is absent or cannot be parsed."""

    code = "malformed_request"


class EncodingOverflow(SignerProxyError):
    """A field does not fit its maximum width."""

    code = "encoding_overflow"


class SignerUnavailable(SignerProxyError):
    """The signer could not be reached, rejected the session, or timed out."""

    code = "signer_unavailable"
    retryable = True


class SignatureMismatch(SignerProxyError):
    """No recovery candidate reproduced the signer's public key.

    Indicates a wrong key handle or a digest/key mismatch below the API.
    """

    code = "signature_mismatch"

    def __init__(self, message: str, attempts: Optional[list[str]] = None):
        super().__init__(message)
        self.attempts = attempts or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.attempts:
            data["attempts"] = self.attempts
        return data
