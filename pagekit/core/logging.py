import os
import sys
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(debug_mode: bool = False, log_dir: Optional[str] = None):
    """
    Route loguru output for an application embedding pagekit.

    The library itself only logs; it installs sinks when PageRuntime is built
    with configure_logging=True. A rotating file sink is added when log_dir is set.
    """
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if debug_mode else "INFO", format=CONSOLE_FORMAT)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        logger.add(
            os.path.join(log_dir, "pagekit_{time:YYYY-MM-DD}.log"),
            rotation="10 MB",
            retention="1 week",
            level="DEBUG",
            enqueue=True,
        )
    logger.debug(f"pagekit logging configured (debug={debug_mode}, dir={log_dir})")
