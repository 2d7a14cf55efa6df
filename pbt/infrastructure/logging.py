import logging
from pathlib import Path

# Third-party loggers that log every request or tag lookup at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "exiftool", "PIL")


def setup_logging(log_path: Path, debug: bool = False) -> logging.Logger:
    """
    Setup logging configuration for PBT.

    Creates the log file's parent directory and routes all records there.
    Client libraries stay at WARNING unless debug is on.

    Args:
        log_path: Path to the log file
        debug: If True, enable DEBUG level logging with per-task detail
    """
    log_file = Path(log_path)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - [%(threadName)s] %(message)s',
        handlers=[logging.FileHandler(log_file)],
        force=True
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
