"""Command line interface.

Usage:
    signer-proxy serve [--backend mock] [--host 0.0.0.0] [--port 3000]
    signer-proxy generate-key [--label my-key] [--exportable]
    signer-proxy address [--backend aws_kms] KEY_ID

All options can also be set through the environment (see config.py).
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from signer_proxy import __version__
from signer_proxy.config import SIGNER_BACKENDS, Settings, get_settings
from signer_proxy.errors import SignerProxyError
from signer_proxy.main import configure_logging, run
from signer_proxy.signing.base import ConnectorError
from signer_proxy.signing.factory import create_connector
from signer_proxy.signing.signer import TransactionSigner

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="signer-proxy",
        description="Sign transactions with keys held in an HSM",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--backend",
        choices=SIGNER_BACKENDS,
        help="Signer backend (default: SIGNER_BACKEND)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", parents=[common], help="Run the JSON-RPC signing server")
    serve.add_argument("--host", help="Bind address (default: API_HOST)")
    serve.add_argument("--port", type=int, help="Bind port (default: API_PORT)")

    generate = subparsers.add_parser(
        "generate-key", parents=[common], help="Generate a signing key on a YubiHSM"
    )
    generate.add_argument("-l", "--label", default="", help="Key label")
    generate.add_argument("-e", "--exportable", action="store_true", help="Allow export under wrap")

    address = subparsers.add_parser("address", parents=[common], help="Print the address of a key")
    address.add_argument("key_id", help="Key handle")

    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Return settings with command line values applied."""
    update = {}
    if args.backend:
        update["signer_backend"] = args.backend
    if getattr(args, "host", None):
        update["api_host"] = args.host
    if getattr(args, "port", None):
        update["api_port"] = args.port
    return settings.model_copy(update=update) if update else settings


def generate_key(settings: Settings, label: str, exportable: bool) -> int:
    """Generate a YubiHSM key and print its id and address."""
    if settings.backend != "yubihsm":
        print("generate-key is only supported by the yubihsm backend", file=sys.stderr)
        return 2

    from signer_proxy.signing.yubihsm import YubiHSMConnector

    connector = YubiHSMConnector.from_settings(settings)
    try:
        key_id, address = connector.generate_key(label=label, exportable=exportable)
    finally:
        asyncio.run(connector.close())

    print(f"Key ID: {key_id}")
    print(f"Address: {address}")
    return 0


async def show_address(settings: Settings, key_id: str) -> int:
    connector = create_connector(settings)
    try:
        signer = await TransactionSigner.create(
            connector, connector.parse_key_handle(key_id), timeout=settings.signing_timeout
        )
    finally:
        await connector.close()

    print(signer.address)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = apply_overrides(get_settings(), args)

    try:
        if args.command == "serve":
            run(settings)
            return 0

        configure_logging(settings)
        if args.command == "generate-key":
            return generate_key(settings, args.label, args.exportable)
        return asyncio.run(show_address(settings, args.key_id))

    except (SignerProxyError, ConnectorError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
