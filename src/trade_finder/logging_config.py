import sys
from pathlib import Path

from loguru import logger


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {extra[operation_id]} | {name}:{function}:{line} | {message}"


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    logger.remove()
    # Records logged outside an operation still need the key for the format string.
    logger.configure(extra={"operation_id": "-"})
    logger.add(sys.stdout, level=level.upper(), format=LOG_FORMAT, enqueue=True)
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level=level.upper(),
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
