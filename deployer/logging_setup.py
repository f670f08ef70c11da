from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(level: str = "INFO", log_path: Optional[Path] = None) -> logging.Logger:
    """Attach handlers to the ``deployer`` logger tree.

    Safe to call more than once; previous handlers are replaced.
    """

    logger = logging.getLogger("deployer")
    logger.setLevel(getattr(logging, str(level or "INFO").upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    fmt = logging.Formatter(LOG_FORMAT)

    if log_path is not None:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    logger.addHandler(stream_handler)

    return logger
