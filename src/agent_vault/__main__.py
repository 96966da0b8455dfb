# AgentVault - Main Entry Point
#
# Runs the vault daemon: FastAPI backend on localhost serving the vault
# UI API and the agent WebSocket.

import logging
import sys
import argparse
from pathlib import Path

from . import __version__
from .config import VaultSettings
from .core.audit_log import configure_structlog


def main():
    """Main entry point for AgentVault."""
    parser = argparse.ArgumentParser(
        description="AgentVault - local secret vault for AI agents",
        epilog="Settings can also be given as AGENTVAULT_* environment variables",
    )

    parser.add_argument(
        "--host",
        default=None,
        help="Bind address (default: 127.0.0.1)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port (default: 8765)"
    )

    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory for vault.db, audit.log and the agent token (default: ~/.agentvault)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"AgentVault v{__version__}"
    )

    args = parser.parse_args()

    try:
        settings = VaultSettings.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.data_dir:
        settings.data_dir = Path(args.data_dir).expanduser()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    configure_structlog()

    print(f"  AgentVault v{__version__}")
    print(f"  API:       http://{settings.host}:{settings.port}/api")
    print(f"  Agent WS:  ws://{settings.host}:{settings.port}/ws")
    print(f"  Data dir:  {settings.data_dir}")
    print("  Press Ctrl+C to stop")
    print()

    from .api.main import start_api_server

    try:
        start_api_server(settings)
    except KeyboardInterrupt:
        print("\n\nShutting down...")
    except Exception as e:
        print(f"\n\nError: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
