"""Process-wide logging setup."""
import logging

from tanam.backend.config import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging() -> None:
    s = get_settings()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    logging.basicConfig(format=LOG_FORMAT, level=level)
    # request lines from the action/identity clients
    logging.getLogger("httpx").setLevel(logging.WARNING)
