import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Log files go to ./logs; in Docker this directory is mounted as a volume.
log_dir = Path("logs")


def setup_logging(level: int = logging.INFO):
    """
    Installs the service-wide logging configuration.

    Logs go both to stdout (development) and to a size-rotated file
    (production). Verification outcomes are logged at INFO by the services,
    so INFO is the default floor.
    """
    log_format = "%(asctime)s - [%(name)s] - %(levelname)s - %(message)s"

    logger = logging.getLogger()
    logger.setLevel(level)

    # Drop handlers installed by uvicorn so every line uses our format.
    if logger.hasHandlers():
        logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter(log_format))
    logger.addHandler(stdout_handler)

    # app.log rolls over to app.log.1 ... app.log.5 at 5 MB.
    log_dir.mkdir(exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / "app.log",
        maxBytes=5*1024*1024,
        backupCount=5
    )
    file_handler.setFormatter(logging.Formatter(log_format))
    logger.addHandler(file_handler)
