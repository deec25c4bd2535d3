"""Logging utilities: local-time formatter and health-check access filter."""

import logging
import time

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class LocalTimeFormatter(logging.Formatter):
    """Formatter that uses local time instead of UTC."""

    def formatTime(self, record, datefmt=None):
        ct = self.converter(record.created)
        if datefmt:
            s = time.strftime(datefmt, ct)
        else:
            s = time.strftime("%Y-%m-%d %H:%M:%S", ct)
            s = f"{s},{int(record.msecs):03d}"
        return s

    converter = time.localtime


class HealthCheckAccessFilter(logging.Filter):
    """Drop GET /health and GET /metrics from uvicorn access log."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if "GET /health " in msg or "GET /metrics " in msg:
            return False
        return True


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler with LocalTimeFormatter (idempotent)."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if any(getattr(h, "_gateway_handler", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(LocalTimeFormatter(LOG_FORMAT))
    handler._gateway_handler = True
    root.addHandler(handler)
