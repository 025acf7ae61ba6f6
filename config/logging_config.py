"""日志配置

统一使用 loguru，替换默认输出为带格式的 stdout，可选追加文件输出。
"""
import sys
from typing import Optional

from loguru import logger

from config.settings import settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | <level>{message}</level>"
)


def setup_logging(level: Optional[str] = None,
                  log_file: Optional[str] = None) -> None:
    """配置 loguru 日志输出。

    Args:
        level: 日志级别，默认使用 settings.log_level。
        log_file: 日志文件路径（可选），默认使用 settings.log_file。
    """
    level = (level or settings.log_level).upper()
    log_file = log_file if log_file is not None else settings.log_file

    logger.remove()
    logger.add(sys.stdout, level=level, format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level=level, rotation="10 MB", encoding="utf-8")
