import logging
import os

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"

logger = logging.getLogger("tictify")


def setup_logging(level: str | int | None = None, log_file: str | None = None):
    """Configure the root handlers once, for CLI and server entry points."""
    if level is None:
        level = os.environ.get("TICTIFY_LOG_LEVEL", "INFO")
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)
    return logger
