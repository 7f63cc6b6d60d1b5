"""Main entry point for cf-switch.

Startup order:
1. Load and validate configuration (exit 1 on error)
2. Obtain the API bearer token (exit 1 on error)
3. Run the first reconciliation inline (exit 1 on error), so the rule
   exists before the API accepts requests
4. Serve the API until SIGTERM/SIGINT, then stop the loop and close the
   Cloudflare client
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

import uvicorn

from .cloudflare import CloudflareClient
from .config import Config, ConfigurationError
from .metrics import Metrics
from .reconciler import Reconciler, ReconcilerError
from .security import TokenError, get_token_provider
from .server import create_app

# Attributes every LogRecord has; anything else was passed through `extra`
_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
        "color_message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from HTTP libraries
    for name in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def main() -> int:
    """Run the service.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logging.getLogger().setLevel(config.log_level)

    logger.info(
        "Starting cf-switch",
        extra={
            "zone_id": config.zone_id,
            "hostnames": list(config.dest_hostnames),
            "default_enabled": config.rule_default_enabled,
            "http_addr": config.http_addr,
            "reconcile_interval_seconds": config.reconcile_interval_seconds,
        },
    )

    try:
        auth_token = get_token_provider(config).ensure_token()
    except TokenError as e:
        logger.error("Failed to obtain API token", extra={"error": str(e)})
        return 1

    metrics = Metrics()
    client = CloudflareClient(
        config.api_token,
        base_url=config.cloudflare_base_url,
        timeout_seconds=config.request_timeout_seconds,
        metrics=metrics,
    )
    reconciler = Reconciler(client, config, metrics=metrics)

    try:
        return await serve(config, reconciler, auth_token, metrics, logger)
    finally:
        await reconciler.stop()
        await client.aclose()
        logger.info("cf-switch stopped")


async def serve(
    config: Config,
    reconciler: Reconciler,
    auth_token: str,
    metrics: Metrics,
    logger: logging.Logger,
) -> int:
    """Start the reconciler and serve the API until a shutdown signal."""
    try:
        await reconciler.start()
    except ReconcilerError as e:
        logger.error("Initial reconciliation failed", extra={"error": str(e)})
        return 1

    app = create_app(reconciler, auth_token, metrics)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.http_host,
            port=config.http_port,
            log_config=None,
            access_log=False,
        )
    )

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        server.should_exit = True

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    logger.info("API server listening", extra={"http_addr": config.http_addr})
    try:
        await server.serve()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    return 0


def run() -> None:
    """Entry point for the service."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
