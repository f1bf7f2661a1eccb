"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from signer_proxy import __version__
from signer_proxy.api.jsonrpc import INVALID_REQUEST, JsonRpcError, JsonRpcReply
from signer_proxy.config import Settings, get_settings
from signer_proxy.signing.base import ConnectorError, SignerConnector
from signer_proxy.signing.factory import get_connector
from signer_proxy.signing.registry import SignerRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    connector: SignerConnector = app.state.connector
    try:
        await connector.open()
    except ConnectorError as e:
        # Sessions are re-opened on the next request
        logger.warning(f"Signer session not available at startup: {e}")
    yield
    # Shutdown
    await connector.close()


async def invalid_request_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report envelope validation failures as JSON-RPC invalid requests."""
    errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]
    reply = JsonRpcReply(
        error=JsonRpcError(
            code=INVALID_REQUEST,
            message="Invalid JSON-RPC request",
            data={"kind": "invalid_request", "retryable": False, "errors": errors},
        )
    )
    return JSONResponse(reply.to_dict(), status_code=400)


def create_app(
    settings: Optional[Settings] = None,
    connector: Optional[SignerConnector] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings (defaults to get_settings())
        connector: Signer connector (defaults to the configured backend)
    """
    settings = settings or get_settings()
    connector = connector or get_connector()

    app = FastAPI(
        title="Signer Proxy",
        description="Signs transactions with keys held in an HSM",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )

    app.state.settings = settings
    app.state.connector = connector
    app.state.registry = SignerRegistry(
        connector,
        timeout=settings.signing_timeout,
        default_key_id=settings.signing_key_id,
    )

    app.add_exception_handler(RequestValidationError, invalid_request_handler)

    # Register routes
    from signer_proxy.api.routes import health, keys

    app.include_router(health.router, tags=["Health"])
    app.include_router(keys.router, tags=["Signing"])

    return app
