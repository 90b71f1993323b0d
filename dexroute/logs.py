from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(level: Union[str, int] = "INFO", log_file: Optional[Path] = None) -> logging.Logger:
    """Install stream (and optional file) handlers on the `dexroute` and `infra` loggers."""
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level {level!r}")
        level = resolved

    fmt = logging.Formatter(LOG_FORMAT)
    handlers = []

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    handlers.append(stream_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(fmt)
        handlers.append(file_handler)

    for name in ("infra", "dexroute"):
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.handlers.clear()
        for h in handlers:
            logger.addHandler(h)
        logger.propagate = False

    return logging.getLogger("dexroute")
