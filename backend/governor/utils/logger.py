# backend/governor/utils/logger.py
import os
import sys

from loguru import logger

logger.remove()
logger.add(
    sys.stdout,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    level=os.getenv("LOG_LEVEL", "INFO"),
)

if os.getenv("GOVERNOR_FILE_LOGS", "1") != "0":
    logger.add(
        "logs/governor_{time}.log",
        rotation="500 MB",
        retention="10 days",
        level="DEBUG",
        enqueue=True,
    )
