import sys
from pathlib import Path
from typing import Optional

from loguru import logger

_CONFIGURED = False

FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {name}:{line} | {message}"


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None,
                  rotation: str = "1 day", retention: str = "30 days") -> None:
    """
    Configure the global loguru logger once per process.
    stderr always; a rotating file sink when log_dir is given.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    logger.remove()
    logger.add(sys.stderr, level=level, format=FORMAT)
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        logger.add(
            sink=f"{log_dir}/{{time:YYYY-MM-DD}}.log",
            rotation=rotation,
            retention=retention,
            level=level,
            format=FORMAT,
            enqueue=True,
        )
    _CONFIGURED = True
    logger.info("logging configured level={} dir={}", level, log_dir or "-")
