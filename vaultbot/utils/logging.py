"""Process-wide logging setup."""

import logging
import sys

from vaultbot.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str | None = None):
    """Configure the root logger once from `settings.log_level`."""
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    if not any(getattr(h, "_vaultbot", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._vaultbot = True
        root.addHandler(handler)

    # Third-party clients are chatty at INFO
    for noisy in ("apscheduler.executors.default", "httpx", "urllib3", "web3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
