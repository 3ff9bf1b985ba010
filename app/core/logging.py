"""
@description 日志初始化
@responsibility 配置 loguru 的控制台和文件输出
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers = [
        {
            "sink": sys.stderr,
            "level": level.upper(),
            "format": LOG_FORMAT,
            "backtrace": False,
            "diagnose": False,
        }
    ]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            {
                "sink": log_file,
                "level": level.upper(),
                "format": LOG_FORMAT,
                "rotation": "10 MB",
                "retention": 5,
                "encoding": "utf-8",
                "enqueue": True,
            }
        )

    logger.configure(handlers=handlers)
    logger.info(f"日志初始化完成 - 级别: {level.upper()}, 文件: {log_file or '无'}")
