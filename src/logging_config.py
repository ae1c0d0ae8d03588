"""Shared logging configuration for the calibration tournament.

Entry points call ``configure_logging()`` once. Repeated calls are no-ops
while the root logger already has handlers, so library code and tests that
install their own handlers are left alone.
"""

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "tournament.log"


def configure_logging(level: int = logging.INFO, log_dir: Optional[str] = "logs") -> Optional[str]:
    """Attach a console handler and, if log_dir is set, an appending file handler.

    Args:
        level: Root logger level
        log_dir: Directory for tournament.log; None disables the file handler

    Returns:
        Path of the log file in use, or None when logging only to the console
        or when logging was already configured
    """
    root = logging.getLogger()
    if root.handlers:
        return None

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)
    root.setLevel(level)

    if log_dir is None:
        return None

    log_path = os.path.join(log_dir, LOG_FILE_NAME)
    try:
        os.makedirs(log_dir, exist_ok=True)
        fh = logging.FileHandler(log_path, mode="a")
    except OSError as e:
        root.warning(f"File logging disabled, cannot open {log_path}: {e}")
        return None
    fh.setFormatter(formatter)
    root.addHandler(fh)
    return log_path
