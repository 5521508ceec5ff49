from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from controller.src.config import ConfigError, load_config
from controller.src.controller import build_controller
from controller.src.health import start_health_server
from controller.src.kube import build_clients, load_kube_configuration
from controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Install the JSON formatter on the root logger at ``LOG_LEVEL`` (default INFO)."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    # The kubernetes client logs full request bodies at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(logging.root.level, logging.INFO))


def main() -> int:
    """Controller entrypoint: configure logging, start the health server, run the watch loop."""
    configure_logging()
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    controller = build_controller(build_clients(), config)

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        active_campaigns=lambda: controller.active_campaigns,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Watching ConfigMaps in %s (batching=%s, settle=%.1fs, poll=%.1fs, timeout=%.1fs)",
        config.namespace or "all namespaces",
        config.batch_strategy,
        config.settle_seconds,
        config.poll_interval_seconds,
        config.ready_timeout_seconds,
    )
    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()

    logger.info("Controller stopped")
    # The watch loop only returns on its own for RBAC failures.
    return 0 if shutdown_event.is_set() else 1


if __name__ == "__main__":
    sys.exit(main())
