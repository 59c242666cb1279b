import logging

from config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API server and CLI scripts."""
    logging.basicConfig(level=level or LOG_LEVEL, format=LOG_FORMAT)
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def short_id(value: str | None, length: int = 15) -> str:
    """Truncate identifiers and tokens for log lines."""
    if not value:
        return "<none>"
    return value if len(value) <= length else f"{value[:length]}..."
