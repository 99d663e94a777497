import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("VYAPAR_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "ai_vyapar.log"
LOG_LEVEL = os.environ.get("VYAPAR_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    """Set up the ``ai_vyapar`` logger with a rotating file and stderr output.

    ``VYAPAR_LOG_DIR`` moves the log file and ``VYAPAR_LOG_LEVEL`` changes the
    threshold for both handlers. Calling this twice is harmless.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
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
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to open log file '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logging ready at level %s", logging.getLevelName(log.level))
