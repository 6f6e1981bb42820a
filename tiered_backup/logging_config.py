"""Shared logging configuration for the backup tooling.

Call ``configure_logging()`` once at any CLI entry point. Cron captures stdout,
so console output is the primary record; ``logs/backup.log`` is kept when the
directory can be created. Idempotent: does nothing if the root logger already
has handlers.
"""

import logging
import os


LOG_DIR = "logs"
LOG_FILE = "backup.log"

# Per-request connection chatter from requests drowns out tick summaries.
QUIET_LOGGERS = ("urllib3",)


def configure_logging(level: int = logging.INFO, log_dir: str = LOG_DIR) -> None:
    """Configure root logger with console + optional file handler."""
    root = logging.getLogger()
    if root.handlers:
        return

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    try:
        os.makedirs(log_dir, exist_ok=True)
        fh = logging.FileHandler(os.path.join(log_dir, LOG_FILE), mode="a")
        fh.setFormatter(formatter)
        root.addHandler(fh)
    except OSError:
        pass

    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
