import json
import logging
import sys
from datetime import datetime, timezone

from shipyard.config import settings

EXTRA_FIELDS = ("target", "state", "container", "port", "image", "outcome", "duration_seconds")

LEVEL_COLORS = {
    "DEBUG": "\033[0;37m",
    "INFO": "\033[0;34m",
    "WARNING": "\033[1;33m",
    "ERROR": "\033[0;31m",
    "CRITICAL": "\033[1;31m",
}
RESET = "\033[0m"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "event": record.getMessage(),
            "module": record.module,
        }
        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class ConsoleFormatter(logging.Formatter):
    """Plain ``HH:MM:SS [LEVEL] message`` lines, coloured when writing to a TTY."""

    def __init__(self, use_color: bool = False):
        super().__init__("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if self.use_color and record.levelname in LEVEL_COLORS:
            return f"{LEVEL_COLORS[record.levelname]}{line}{RESET}"
        return line


def setup_logging(level: str | None = None, log_file: str | None = None) -> None:
    root = logging.getLogger()
    level = level or settings.LOG_LEVEL
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    root.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(ConsoleFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(stdout_handler)

    log_file = log_file or settings.LOG_FILE
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    # paramiko logs every channel open at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
