from __future__ import annotations

import logging
from typing import Any

from portrelay.config import get_path
from portrelay.rules import Config

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def parse_level(s: Any, default: int) -> int:
    if not s:
        return default
    name = str(s).strip().upper()
    level = getattr(logging, name, default)
    return level if isinstance(level, int) else default


def setup_logging(cfg: Config, name: str = "portrelay") -> logging.Logger:
    log = logging.getLogger(name)
    log.propagate = False
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()
    log.setLevel(logging.DEBUG)  # handlers gate output

    lc = cfg.logging or {}
    console_cfg = get_path(lc, "console", {}) or {}
    file_cfg = get_path(lc, "file", {}) or {}

    console_level = parse_level(console_cfg.get("verbosity"), logging.INFO)
    if cfg.debug:
        console_level = logging.DEBUG

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter(LOG_FORMAT))
    log.addHandler(ch)

    if bool(file_cfg.get("enabled", False)):
        path = str(file_cfg.get("path", f"{name}.log"))
        file_level = parse_level(file_cfg.get("verbosity"), logging.INFO)
        if cfg.debug:
            file_level = logging.DEBUG
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        log.addHandler(fh)

    return log


def emit(log: logging.Logger, level: int, cat: str, event: str, payload: Any = None, **kw: Any) -> None:
    """Log one engine event as ``<cat>.<event> {payload}``."""
    if not log.isEnabledFor(level):
        return
    log.log(level, "%s.%s %s", cat, event, payload if payload is not None else {}, **kw)
