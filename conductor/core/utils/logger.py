"""统一日志工具"""

import logging
import threading
from logging.handlers import RotatingFileHandler
from typing import Optional

from conductor.config import LOG_BACKUP_COUNT, LOG_FILE, LOG_FORMAT, LOG_LEVEL, LOG_MAX_BYTES

_file_handler: Optional[RotatingFileHandler] = None
_handler_lock = threading.Lock()


def _get_file_handler() -> Optional[RotatingFileHandler]:
    """所有 logger 共用一个滚动文件 handler，文件不可写时仅输出到控制台"""
    global _file_handler

    if _file_handler is None:
        with _handler_lock:
            if _file_handler is None:
                try:
                    handler = RotatingFileHandler(
                        LOG_FILE,
                        maxBytes=LOG_MAX_BYTES,
                        backupCount=LOG_BACKUP_COUNT,
                        encoding="utf-8",
                    )
                except OSError:
                    return None
                handler.setFormatter(logging.Formatter(LOG_FORMAT))
                _file_handler = handler

    return _file_handler


def setup_logger(
    name: str,
    level: int = LOG_LEVEL,
    console: bool = True,
) -> logging.Logger:
    """
    获取带统一格式的 logger，重复调用不会重复挂载 handler

    Args:
        name: logger 名称
        level: 日志级别
        console: 是否输出到控制台

    Returns:
        配置好的 logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if getattr(logger, "_conductor_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    file_handler = _get_file_handler()
    if file_handler is not None:
        logger.addHandler(file_handler)

    logger.propagate = False
    logger._conductor_configured = True  # type: ignore[attr-defined]
    return logger
