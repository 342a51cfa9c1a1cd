"""FrigoGest ERP: batch, stock, sales and ledger reconciliation."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "frigo_erp.log"
DEFAULT_LOG_LEVEL = "INFO"


def _configure_logging() -> logging.Logger:
    """Configure package-wide logging with file and console handlers."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(DEFAULT_LOG_LEVEL)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # The console only shows warnings; the ledger trail goes to the file.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def set_log_level(level_name: str) -> int:
    """Apply the ``[Defaults] LogLevel`` setting to the package logger.

    Raises:
        ValueError: If ``level_name`` is not a standard logging level.
    """

    level = logging.getLevelName(str(level_name).strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {level_name}")
    if log.level != level:
        log.setLevel(level)
        log.debug("Log level set to %s", logging.getLevelName(level))
    return level


log = _configure_logging()
log.debug("FrigoGest ERP logger ready at '%s'", LOG_FILE)
