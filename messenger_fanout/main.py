"""
Service entry point.

Loads configuration, configures logging, and serves the app with uvicorn.
"""

from __future__ import annotations

import argparse
import logging
import sys

import structlog
import uvicorn

from .app import create_app
from .config import load_config


# Library loggers rendered through the service's structlog pipeline
ROUTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "aio_pika", "aiormq")
# Kept at WARNING or above
BROKER_LOGGERS = ("aio_pika", "aiormq")


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """
    Configure structlog and route uvicorn and broker client logs through it.

    Stdlib records from the routed libraries get the same processors and
    renderer as the service's own events.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        shared.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    for name in ROUTED_LOGGERS:
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.propagate = False
        logger.setLevel(max(log_level, logging.WARNING) if name in BROKER_LOGGERS else log_level)


def run() -> None:
    """CLI entry point for the fan-out service."""
    parser = argparse.ArgumentParser(description="Messenger delivery fan-out service")
    parser.add_argument(
        "-c", "--config",
        default="fanout.yaml",
        help="Path to configuration file (default: fanout.yaml)",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info(
        "service.config_loaded",
        config_path=args.config,
        backend=config.broker.backend,
        port=config.server.port,
    )

    app = create_app(config)
    # log_config=None keeps the handlers installed by configure_logging
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level,
        log_config=None,
    )


if __name__ == "__main__":
    run()
