# File: gphik/utils/logging_utils.py

"""
Logging helpers shared by the GPHIK modules.

Every stage of learning (spectrum, search, precomputation) is timed at DEBUG
level, and the resident memory of the process is reported after a full
learning or re-learning pass.
"""

import logging
import os
import time
from contextlib import contextmanager
from typing import Optional

import psutil

_DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(name: str, log_dir: Optional[str] = None,
                 level: int = logging.INFO) -> logging.Logger:
    """Attach a console handler (and a file handler if ``log_dir`` is given)."""

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter(_DEFAULT_FORMAT)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        if log_dir is not None:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(log_dir, f"{name}.log"))
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


@contextmanager
def log_timing(logger: logging.Logger, label: str):
    """Log the wall clock time spent inside the block at DEBUG level."""

    start_time = time.time()
    try:
        yield
    finally:
        logger.debug(f"Time used for {label}: {time.time() - start_time:.4f}s")


def memory_usage_mb() -> float:
    """Resident set size of the current process in MB."""

    return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
