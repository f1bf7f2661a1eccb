"""JSON-RPC 2.0 request/response models and error mapping."""

from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from signer_proxy.errors import (
    EncodingOverflow,
    MalformedRequest,
    SignatureMismatch,
    SignerProxyError,
    SignerUnavailable,
)

# JSON-RPC error codes
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000

# Error class -> (JSON-RPC code, HTTP status)
ERROR_MAP: dict[type, tuple[int, int]] = {
    MalformedRequest: (INVALID_PARAMS, 400),
    EncodingOverflow: (INVALID_PARAMS, 400),
    SignerUnavailable: (SERVER_ERROR, 503),
    SignatureMismatch: (INTERNAL_ERROR, 500),
}


class JsonRpcRequest(BaseModel):
    """JSON-RPC request envelope."""

    jsonrpc: str = Field(default="2.0", description="Protocol version")
    method: str = Field(..., description="Method name")
    id: Optional[Union[int, str]] = Field(default=None, description="Request id")
    params: list[Any] = Field(default_factory=list, description="Positional params")


class JsonRpcError(BaseModel):
    """JSON-RPC error object."""

    code: int
    message: str
    data: Optional[dict[str, Any]] = None


class JsonRpcReply(BaseModel):
    """JSON-RPC response envelope (exactly one of result/error is set)."""

    jsonrpc: str = "2.0"
    id: Optional[Union[int, str]] = None
    result: Optional[Any] = None
    error: Optional[JsonRpcError] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            data["error"] = self.error.model_dump(exclude_none=True)
        else:
            data["result"] = self.result
        return data


class AddressResponse(BaseModel):
    """Signer address response."""

    address: str


def error_reply(request_id: Optional[Union[int, str]], error: SignerProxyError) -> tuple[JsonRpcReply, int]:
    """Build the JSON-RPC error reply and HTTP status for a pipeline error."""
    code, status = INTERNAL_ERROR, 500
    for error_type, mapping in ERROR_MAP.items():
        if isinstance(error, error_type):
            code, status = mapping
            break

    reply = JsonRpcReply(
        id=request_id,
        error=JsonRpcError(code=code, message=error.message, data=error.to_dict()),
    )
    return reply, status
