"""
=============================================================================
CONTACT SERVER CLI ENTRY POINT
=============================================================================

    # Run with defaults (all interfaces, port 1337)
    python -m contactserver

    # Local development
    python -m contactserver --host 127.0.0.1 --port 2020 --log-level DEBUG

    # Smaller concurrency cap
    python -m contactserver --max-connections 20

Defaults come from ServerConfig (optionally overridden by CONTACT_*
environment variables); command-line flags override both.

=============================================================================
"""

import argparse
import sys

from . import __version__
from .config import ServerConfig
from .server import create_server


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contactserver",
        description="Plaintext TCP contact menu with connection flood protection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m contactserver                        # Listen on port 1337
  python -m contactserver --port 2020            # Custom port
  python -m contactserver --max-connections 20   # Lower concurrency cap
        """
    )

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--host", "-H",
        default=None,
        help="Host to bind to (default: all interfaces, IPv4 and IPv6)"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Port to listen on (default: 1337)"
    )

    # ─────────────────────────────────────────────────────────────────────
    # ADMISSION ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--max-connections", "-c",
        type=int,
        default=None,
        help="Maximum concurrent sessions (default: 100)"
    )

    # ─────────────────────────────────────────────────────────────────────
    # META ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"contactserver {__version__}"
    )

    return parser


def main(argv=None):
    """Parse arguments, build the server and run it until shutdown."""
    args = build_parser().parse_args(argv)

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Error: invalid environment setting: {e}", file=sys.stderr)
        sys.exit(1)

    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.max_connections is not None:
        config.max_connections = args.max_connections
    if args.log_level is not None:
        config.log_level = args.log_level

    try:
        server = create_server(config)
        server.run()
    except (OSError, ValueError) as e:
        # Bind failure or invalid configuration: fatal at startup
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
