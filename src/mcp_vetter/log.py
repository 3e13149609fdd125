from __future__ import annotations

import logging
import os
import secrets
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import structlog
from structlog.typing import Processor

BoundLogger = structlog.stdlib.BoundLogger

APP_DIR_NAME = "mcp-vetter"


def default_log_dir() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Logs" / APP_DIR_NAME
    state_home = os.environ.get("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return Path(state_home) / APP_DIR_NAME


def _build_processors() -> list[Processor]:
    return [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "event"], drop_missing=True),
    ]


def _wrap(stdlib_logger: logging.Logger) -> BoundLogger:
    return structlog.wrap_logger(
        stdlib_logger,
        processors=_build_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
    )


def init_session_log(prefix: str = "vet", log_dir: Optional[Path] = None) -> Tuple[BoundLogger, Path]:
    """Open a fresh per-invocation log file and return a logger writing to it.

    The file is named ``<prefix>-YYYYMMDD-HHMMSS-<hex>.log``. Nothing is
    attached to the root logger, so library logging is left alone.
    """

    directory = Path(log_dir) if log_dir else default_log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    path = directory / f"{prefix}-{stamp}-{secrets.token_hex(3)}.log"

    stdlib_logger = logging.getLogger(f"mcp_vetter.session.{path.stem}")
    stdlib_logger.setLevel(logging.DEBUG)
    stdlib_logger.propagate = False
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    stdlib_logger.addHandler(handler)

    logger = _wrap(stdlib_logger).bind(session=path.stem)
    logger.info("session.start", pid=os.getpid(), argv=" ".join(sys.argv))
    return logger, path


def close_session_log(path: Path) -> None:
    stdlib_logger = logging.getLogger(f"mcp_vetter.session.{path.stem}")
    for handler in list(stdlib_logger.handlers):
        handler.close()
        stdlib_logger.removeHandler(handler)


def discard_logger() -> BoundLogger:
    stdlib_logger = logging.getLogger("mcp_vetter.discard")
    stdlib_logger.propagate = False
    if not stdlib_logger.handlers:
        stdlib_logger.addHandler(logging.NullHandler())
    return _wrap(stdlib_logger)


__all__ = ["BoundLogger", "close_session_log", "default_log_dir", "discard_logger", "init_session_log"]
