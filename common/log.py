from __future__ import annotations

import logging
import sys

_NOISY_LOGGERS = ("aiohttp.access", "asyncio")


def setup_logging(level: str = "info") -> None:
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
    )
    # Per-request access lines and loop debug chatter drown the stream logs.
    if log_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
