from __future__ import annotations

import logging

from panelhub.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger once for processes embedding panelhub."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel((level or settings.LOG_LEVEL).upper())
        return
    logging.basicConfig(level=(level or settings.LOG_LEVEL).upper(), format=LOG_FORMAT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def short_error(err: BaseException | str, limit: int = 220) -> str:
    return str(err)[:limit]
