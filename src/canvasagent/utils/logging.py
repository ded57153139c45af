"""Logging setup for hosts embedding the agent pipeline.

Provider SDK errors routinely echo request headers and URLs back at us, so
every handler installed here masks anything shaped like an API key before it
reaches disk.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

from ..services.settings import redact_secret

__all__ = ["SecretRedactingFilter", "setup_logging", "get_logger", "get_log_path"]

_DEFAULT_LOG_DIR = Path.home() / ".canvasagent" / "logs"
_LOG_FILE_NAME = "canvasagent.log"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "anthropic", "google_genai")
_SECRET_PATTERN = re.compile(r"\b(?:sk-ant-[\w-]{8,}|sk-[\w-]{16,}|AIza[\w-]{20,})")
_CONFIGURED = False
_LOG_PATH: Path | None = None


class SecretRedactingFilter(logging.Filter):
    """Masks Anthropic, OpenAI and Google key shapes in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _SECRET_PATTERN.sub(lambda match: redact_secret(match.group(0)), message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    level: int | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Route root logging to ``canvasagent.log`` and, optionally, stderr.

    ``level`` defaults to ``CANVASAGENT_LOG_LEVEL`` (a level name) and then
    INFO. Repeated calls return the first log path unless ``force`` is set.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    resolved_level = _resolve_level(level)
    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    redactor = SecretRedactingFilter()
    for handler in handlers:
        handler.setLevel(resolved_level)
        handler.setFormatter(formatter)
        handler.addFilter(redactor)

    logging.basicConfig(level=resolved_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(resolved_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the configured log file, or ``None`` before :func:`setup_logging`."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("CANVASAGENT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _resolve_level(level: int | None) -> int:
    if level is not None:
        return level
    name = os.environ.get("CANVASAGENT_LOG_LEVEL", "").strip().upper()
    resolved = logging.getLevelName(name) if name else logging.INFO
    return resolved if isinstance(resolved, int) else logging.INFO


def _tune_external_loggers(root_level: int) -> None:
    # SDK request/response chatter is only useful when explicitly debugging
    quiet_level = root_level if root_level <= logging.DEBUG or root_level >= logging.WARNING else logging.WARNING
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
