"""
Command-line interface for the commons server.

Provides CLI commands for server management:
- run: Start the API server (HTTP + WebSocket)
- config: Print the effective configuration
- reap: Run the mail and stale-trade reapers once against the data directory

Usage:
    commons-server run [--host HOST] [--port PORT]
    commons-server config
    commons-server reap

Environment Variables:
    COMMONS_HOST: Host to bind the API server (default: 0.0.0.0)
    COMMONS_PORT: Port for the API server (default: 8000)
    COMMONS_DATA_DIR: Directory holding the JSON snapshots
    COMMONS_ADMIN_TOKEN: Shared secret the game server uses to open sessions
"""

import argparse
import asyncio
import sys

from commons_server.config import config, print_config_summary
from commons_server.logging_setup import configure_logging


def cmd_run(args: argparse.Namespace) -> int:
    """
    Start the API server with uvicorn.

    Returns:
        0 on clean shutdown, 1 if the server failed to start.
    """
    import uvicorn

    from commons_server.api.server import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    print(f"Starting commons server on {host}:{port}")
    print(f"Data directory: {config.data.absolute_dir}")
    if not config.security.admin_token:
        print("Warning: no admin token set; POST /sessions is disabled (set COMMONS_ADMIN_TOKEN)")
    try:
        uvicorn.run(create_app(), host=host, port=port, log_config=None)
    except OSError as e:
        print(f"Error: could not start server: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Print the effective configuration."""
    print_config_summary()
    return 0


async def _reap() -> tuple[int, int]:
    from commons_server.core.container import build_services

    services = build_services()
    mail_removed = services.mail.reap(force=True)
    trades_failed = await services.trades.reap_stale()
    services.writer.flush_all()
    return mail_removed, trades_failed


def cmd_reap(args: argparse.Namespace) -> int:
    """
    Run both reapers once and persist the result.

    Intended for cron use while the server is stopped; a running server
    reaps on its own schedule.
    """
    mail_removed, trades_failed = asyncio.run(_reap())
    print(f"Removed {mail_removed} expired mail, timed out {trades_failed} stale trades")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="commons-server",
        description="Commons Server - chat, mail, forum and trading for multiplayer games",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run the API server",
        description="Start the HTTP and WebSocket server.",
    )
    run_parser.add_argument(
        "--port",
        "-p",
        type=int,
        help="API server port (default: 8000, or COMMONS_PORT env var)",
    )
    run_parser.add_argument(
        "--host",
        type=str,
        help="Host to bind to (default: 0.0.0.0, or COMMONS_HOST env var)",
    )
    run_parser.set_defaults(func=cmd_run)

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show the effective configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    # reap command
    reap_parser = subparsers.add_parser(
        "reap",
        help="Run the mail and trade reapers once",
        description="Drop expired mail and time out stale trades, then save snapshots.",
    )
    reap_parser.set_defaults(func=cmd_reap)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging(config.logging.level, config.logging.format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
