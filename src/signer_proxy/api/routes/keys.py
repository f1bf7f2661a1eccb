"""JSON-RPC signing endpoints.

POST /key/{key_id}          JSON-RPC for a specific key
POST /                      JSON-RPC for the default key (SIGNING_KEY_ID)
GET  /key/{key_id}/address  Signer address for a key
GET  /address               Signer address for the default key
"""

import logging
from typing import Awaitable, Callable

import httpx
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from signer_proxy.api.jsonrpc import (
    METHOD_NOT_FOUND,
    SERVER_ERROR,
    AddressResponse,
    JsonRpcError,
    JsonRpcReply,
    JsonRpcRequest,
    error_reply,
)
from signer_proxy.errors import MalformedRequest, SignerProxyError
from signer_proxy.signing.registry import SignerRegistry
from signer_proxy.signing.signer import TransactionSigner

logger = logging.getLogger(__name__)

router = APIRouter()

SignerResolver = Callable[[], Awaitable[TransactionSigner]]


def _registry(request: Request) -> SignerRegistry:
    return request.app.state.registry


async def forward_to_upstream(url: str, payload: JsonRpcRequest, timeout: float) -> JSONResponse:
    """Pass a non-signing method through to the node RPC."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, json=payload.model_dump())
            return JSONResponse(response.json(), status_code=response.status_code)
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Upstream RPC call {payload.method} failed: {e}")
        reply = JsonRpcReply(
            id=payload.id,
            error=JsonRpcError(
                code=SERVER_ERROR,
                message=f"Upstream RPC unavailable: {e}",
                data={"kind": "upstream_unavailable", "retryable": True},
            ),
        )
        return JSONResponse(reply.to_dict(), status_code=502)


async def dispatch(request: Request, payload: JsonRpcRequest, resolve_signer: SignerResolver) -> JSONResponse:
    """Route a JSON-RPC call to the signer or the upstream node."""
    settings = request.app.state.settings
    method = payload.method

    try:
        if method == "eth_signTransaction":
            if not payload.params:
                raise MalformedRequest("params is empty", field="params")
            signer = await resolve_signer()
            result = await signer.sign_request(payload.params[0])

        elif method == "eth_accounts":
            signer = await resolve_signer()
            result = [signer.address]

        elif settings.upstream_rpc_url:
            return await forward_to_upstream(settings.upstream_rpc_url, payload, settings.signing_timeout)

        else:
            reply = JsonRpcReply(
                id=payload.id,
                error=JsonRpcError(
                    code=METHOD_NOT_FOUND,
                    message=f"method not supported (eth_signTransaction only): {method}",
                ),
            )
            return JSONResponse(reply.to_dict(), status_code=400)

    except SignerProxyError as e:
        reply, status = error_reply(payload.id, e)
        if status >= 500:
            logger.error(f"{method} failed: {e.code}: {e.message}")
        else:
            logger.info(f"{method} rejected: {e.code}: {e.message}")
        return JSONResponse(reply.to_dict(), status_code=status)

    return JSONResponse(JsonRpcReply(id=payload.id, result=result).to_dict())


async def _address(resolve_signer: SignerResolver) -> AddressResponse:
    try:
        signer = await resolve_signer()
    except SignerProxyError as e:
        _, status = error_reply(None, e)
        raise HTTPException(status_code=status, detail=e.message)
    return AddressResponse(address=signer.address)


@router.post("/key/{key_id}")
async def handle_key_request(key_id: str, payload: JsonRpcRequest, request: Request) -> JSONResponse:
    """JSON-RPC endpoint for a specific key."""
    registry = _registry(request)
    return await dispatch(request, payload, lambda: registry.get(key_id))


@router.post("/")
async def handle_default_request(payload: JsonRpcRequest, request: Request) -> JSONResponse:
    """JSON-RPC endpoint for the default key."""
    registry = _registry(request)
    return await dispatch(request, payload, registry.default)


@router.get("/key/{key_id}/address", response_model=AddressResponse)
async def get_key_address(key_id: str, request: Request) -> AddressResponse:
    """Get the address of a key."""
    registry = _registry(request)
    return await _address(lambda: registry.get(key_id))


@router.get("/address", response_model=AddressResponse)
async def get_default_address(request: Request) -> AddressResponse:
    """Get the address of the default key."""
    return await _address(_registry(request).default)
