"""Centralized logging configuration for openwrk.

Sets up Python's logging system to write to both stdout and a rotating
log file in the data directory, and provides a dedicated logger that
captures the raw output of every supervised sidecar.

Log directory structure::

    ~/.openwork/openwrk/logs/
    ├── openwrk.log      # All Python logger output (rotating)
    └── sidecars.log     # "[name:stream] line" for every sidecar line
"""
from __future__ import annotations

import logging
import logging.handlers
import os

sidecar_output_logger = logging.getLogger("openwrk._sidecar_output")

_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def setup_logging(log_dir: str, log_level: str = "info", *, to_stdout: bool = True) -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at process startup. The detached router
    daemon passes ``to_stdout=False`` since its stdio is discarded.
    """
    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # Clear any existing handlers (avoid duplicate output on re-init)
    root.handlers.clear()

    fmt = logging.Formatter(_FORMAT, datefmt=_DATEFMT)

    if to_stdout:
        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(level)
        stdout_handler.setFormatter(fmt)
        root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "openwrk.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    sidecar_output_logger.setLevel(logging.INFO)
    sidecar_output_logger.propagate = False  # Don't bubble up to root
    sidecar_output_logger.handlers.clear()
    sidecar_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "sidecars.log"),
        maxBytes=10 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    sidecar_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s", datefmt=_DATEFMT))
    sidecar_output_logger.addHandler(sidecar_handler)

    # httpx logs every request at INFO; health polling would flood the log
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.getLogger("openwrk").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def log_sidecar_line(name: str, stream: str, line: str) -> None:
    """Route one line of sidecar output to the tagged logger and the raw sidecar log."""
    logger = logging.getLogger(f"openwrk.sidecar.{name}")
    if stream == "stderr":
        logger.warning("[%s] %s", name, line)
    else:
        logger.info("[%s] %s", name, line)
    sidecar_output_logger.info("[%s:%s] %s", name, stream, line)
