#!/usr/bin/env python3
"""
Zabbix Alert Bridge - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Polls Zabbix for high/disaster problems, stores them, and
notifies matching Telegram groups.

- serve: admin API plus the scheduled poller (uvicorn)
- poll: run one poll cycle and exit (0 = success)
- test-connection: probe the configured Zabbix endpoint

============================================================
USAGE
============================================================
Direct execution:
    python app.py serve --port 8000
    python app.py poll
    python app.py test-connection

Environment-based configuration (.env is loaded first):
    ZABBIX_URL=https://zabbix.example.com ZABBIX_ENABLED=true python app.py poll

============================================================
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import IntegrationSettings
from core.logging_config import setup_logging
from monitoring.api import install_error_handlers, router as zabbix_router
from monitoring.service import ZabbixIntegration, build_integration
from storage.database import configure_database, create_all_tables, verify_database_connection


logger = logging.getLogger(__name__)


# ============================================================
# APPLICATION FACTORY
# ============================================================

def create_app(
    settings: Optional[IntegrationSettings] = None,
    integration: Optional[ZabbixIntegration] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Process settings (from environment if omitted)
        integration: Pre-built integration (tests inject one)
        start_scheduler: Start polling on startup
    """
    settings = settings or IntegrationSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        current = app.state.integration
        if current is None:
            session_factory = configure_database(settings.database_url)
            create_all_tables()
            current = build_integration(settings, session_factory)
            app.state.integration = current

        if start_scheduler:
            await current.start()
        try:
            yield
        finally:
            await current.shutdown()

    app = FastAPI(
        title="Zabbix Alert Bridge API",
        description="Zabbix problem polling and Telegram notification groups.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.integration = integration

    # CORS (admin UI runs on its own origin)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_error_handlers(app)
    app.include_router(zabbix_router)

    @app.get("/")
    def root():
        return {"status": "ok", "message": "Zabbix Alert Bridge is running"}

    return app


# ============================================================
# CLI
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="zabbix-alert-bridge",
        description="Zabbix to Telegram alert bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  serve            - Admin API with scheduled polling
  poll             - Run a single poll cycle and exit
  test-connection  - Probe the configured Zabbix endpoint

Examples:
  %(prog)s serve --port 8080
  %(prog)s poll --log-level DEBUG
        """
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (default: LOG_LEVEL or INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the admin API and scheduler")
    serve.add_argument("--host", type=str, default=None, help="Bind address (default: API_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: API_PORT)")

    subparsers.add_parser("poll", help="Run one poll cycle")
    subparsers.add_parser("test-connection", help="Probe the Zabbix endpoint")

    return parser


def print_banner(args: argparse.Namespace, settings: IntegrationSettings) -> None:
    """Print startup banner."""
    print()
    print("=" * 60)
    print("  ZABBIX ALERT BRIDGE")
    print("=" * 60)
    print(f"  Command:    {args.command}")
    print(f"  Database:   {settings.database_url.split('@')[-1]}")
    print(f"  Log Level:  {settings.log_level}")
    print("=" * 60)
    print()


def _prepare(settings: IntegrationSettings) -> ZabbixIntegration:
    session_factory = configure_database(settings.database_url)
    verify_database_connection()
    create_all_tables()
    return build_integration(settings, session_factory)


async def run_poll_once(settings: IntegrationSettings) -> int:
    integration = _prepare(settings)
    try:
        result = await integration.orchestrator.run_cycle(trigger="manual")
    finally:
        await integration.shutdown()

    if result.skipped:
        logger.warning(f"Poll skipped: {result.error or 'integration disabled'}")
        return 1
    return 0 if result.success else 1


async def run_connection_test(settings: IntegrationSettings) -> int:
    integration = _prepare(settings)
    try:
        config = integration.load_config()
        if not config.url:
            print("Error: Zabbix URL not configured", file=sys.stderr)
            return 1
        probe = await integration.client.verify_credentials(config, integration.cipher)
    finally:
        await integration.shutdown()

    if probe.success:
        print(f"Connected to Zabbix {probe.version} ({probe.latency_ms:.0f} ms)")
        return 0
    print(f"Connection failed: {probe.error}", file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = create_parser().parse_args(argv)
    settings = IntegrationSettings.from_env()
    if args.log_level:
        settings.log_level = args.log_level

    errors = settings.validate()
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level, settings.log_format)
    print_banner(args, settings)

    if args.command == "poll":
        return asyncio.run(run_poll_once(settings))
    if args.command == "test-connection":
        return asyncio.run(run_connection_test(settings))

    import uvicorn
    uvicorn.run(
        create_app(settings),
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
