import logging
import sys

from pythonjsonlogger import jsonlogger

from nmc_prep.core.config import settings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Install the root handler once; repeated calls just adjust the level."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    if any(getattr(h, "_nmc_prep", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    if (fmt or settings.LOG_FORMAT) == "json":
        handler.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    handler._nmc_prep = True
    root.addHandler(handler)
