"""Logging initialization for scripts and embedding applications."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from bisub.config import LoggingSettings, Settings

_CONFIGURED_ATTR = "_bisub_configured"


def _resolve_log_file(cfg: LoggingSettings, log_dir: str) -> Path | None:
    if not cfg.file:
        return None
    path = Path(str(cfg.file))
    if not path.is_absolute():
        path = Path(log_dir) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def build_handlers(cfg: LoggingSettings, log_dir: str) -> list[logging.Handler]:
    formatter = logging.Formatter(fmt=str(cfg.format), datefmt=str(cfg.datefmt))
    handlers: list[logging.Handler] = []
    if cfg.console:
        handlers.append(logging.StreamHandler())
    log_file = _resolve_log_file(cfg, log_dir)
    if log_file is not None:
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=int(cfg.max_bytes),
                backupCount=int(cfg.backup_count),
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(settings: Settings, *, force: bool = False) -> None:
    """Configure the `bisub` logger tree from `settings.logging`.

    Only `bisub.*` gets handlers; loggers listed in `quiet_loggers` are capped
    at WARNING.
    Repeated calls are no-ops unless `force` is set.
    """
    logger = logging.getLogger("bisub")
    if getattr(logger, _CONFIGURED_ATTR, False) and not force:
        return

    cfg = settings.logging
    level = logging.getLevelName(str(cfg.level or "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    for handler in logger.handlers:
        handler.close()
    logger.handlers = build_handlers(cfg, settings.log_dir)
    logger.setLevel(level)
    logger.propagate = False

    for name in cfg.quiet_loggers:
        third_party = logging.getLogger(name)
        if third_party.level == logging.NOTSET or third_party.level < logging.WARNING:
            third_party.setLevel(logging.WARNING)

    setattr(logger, _CONFIGURED_ATTR, True)
