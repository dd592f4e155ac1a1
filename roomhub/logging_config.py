from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_level(value: Any, default: int) -> int:
    """Accept a level name ("debug", "WARN"), a number, or a numeric string."""
    if isinstance(value, int):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    named = logging.getLevelNamesMapping().get(text)
    if named is not None:
        return named
    return int(text) if text.isdigit() else default


def _open_log_file(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    # Chat logs can carry room names and display names.
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def _build_handlers(cfg: HubRuntimeConfig, log_file: str | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(_open_log_file(log_file))
    return handlers


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install roomhub's handlers on the root logger, replacing any present.

    An empty `override_file` disables file logging even if the config names one.
    """
    log_file = cfg.log_file if override_file is None else (override_file.strip() or None)

    formatter = logging.Formatter(
        fmt=(cfg.log_format or "").strip() or DEFAULT_FORMAT,
        datefmt=cfg.log_datefmt or None,
    )
    handlers = _build_handlers(cfg, log_file)
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))

    logging.getLogger("RNS").setLevel(parse_level(cfg.log_rns_level, logging.WARNING))
    logging.captureWarnings(True)
