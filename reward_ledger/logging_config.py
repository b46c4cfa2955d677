import sys

from loguru import logger


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    """Replace loguru's default sink with one configured for the engine."""
    logger.remove()
    if json:
        logger.add(sys.stderr, level=level, serialize=True)
        return
    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
        ),
    )
