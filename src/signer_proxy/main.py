"""Main entry point - runs the signing API."""

import asyncio
import logging
from typing import Optional

import uvicorn

from signer_proxy.api.app import create_app
from signer_proxy.config import Settings, get_settings
from signer_proxy.signing.factory import create_connector

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure process logging once."""
    if settings.debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)


class Application:
    """Runs the signing API for one signer session."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.server: Optional[uvicorn.Server] = None

    async def start(self):
        """Start the API server and block until it exits."""
        configure_logging(self.settings)

        logger.info("Starting signer-proxy...")
        logger.info(f"Environment: {self.settings.environment}")
        logger.info(f"Signer backend: {self.settings.backend}")

        connector = create_connector(self.settings)
        app = create_app(self.settings, connector=connector)

        config = uvicorn.Config(
            app,
            host=self.settings.api_host,
            port=self.settings.api_port,
            log_level="debug" if self.settings.debug else "info",
        )
        self.server = uvicorn.Server(config)
        logger.info(f"Listening on {self.settings.api_host}:{self.settings.api_port}")
        await self.server.serve()
        logger.info("Shutdown complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        if self.server is not None:
            self.server.should_exit = True


def run(settings: Optional[Settings] = None) -> None:
    """Run the service until interrupted."""
    app = Application(settings)
    try:
        asyncio.run(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
