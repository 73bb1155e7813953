"""
 * @file: logging_config.py
 * @description: Конфигурация логирования проекта с фильтрацией технических логов
 * @dependencies: logging, os, RotatingFileHandler
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_PATH = os.getenv("LOG_PATH", os.path.join(os.getcwd(), "logs"))

# Переменные окружения для управления логированием
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENABLE_SQL_LOGS = os.getenv("ENABLE_SQL_LOGS", "false").lower() == "true"

TECHNICAL_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "sqlalchemy.dialects",
    "sqlalchemy.orm",
    "urllib3",
    "httpx",
    "uvicorn",
    "celery.worker",
    "celery.beat",
    "celery.app",
    "kombu",
    "redis",
    "psycopg",
)

BUSINESS_LOGGERS = (
    "article.sync",
    "article.store",
    "content.source",
    "distributed.lock",
    "business",
    "errors",
)

SQL_KEYWORDS = (("SELECT", "FROM"), ("INSERT", "INTO"), ("UPDATE", "SET"), ("DELETE", "FROM"))


class BusinessLogicFilter(logging.Filter):
    """
    Фильтр для отображения только бизнес-логики, исключая технические детали
    """
    def filter(self, record):
        if record.name.startswith(TECHNICAL_LOGGERS):
            return False

        # Исключаем сообщения с SQL запросами
        if isinstance(record.msg, str):
            for first, second in SQL_KEYWORDS:
                if first in record.msg and second in record.msg:
                    return False
            if 'BEGIN' in record.msg or 'COMMIT' in record.msg or 'ROLLBACK' in record.msg:
                return False

        return True


class ColoredFormatter(logging.Formatter):
    """
    Форматтер с цветным выводом для консоли
    """
    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        if getattr(record, 'use_color', False):
            color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
            reset = self.COLORS['RESET']
            record.levelname = f"{color}{record.levelname}{reset}"
            record.name = f"{color}{record.name}{reset}"

        return super().format(record)


def setup_project_logging(log_level: Optional[str] = None, enable_sql_logs: Optional[bool] = None) -> logging.Logger:
    """
    Настраивает логирование для всего проекта.

    Вызывается из точек входа (FastAPI, Celery worker), а не при импорте.

    Args:
        log_level: Уровень логирования (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_sql_logs: Включить логи SQL запросов (для отладки)
    """
    if log_level is None:
        log_level = LOG_LEVEL
    if enable_sql_logs is None:
        enable_sql_logs = ENABLE_SQL_LOGS

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    os.makedirs(LOG_PATH, exist_ok=True)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_formatter = ColoredFormatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S'
    )
    file_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(numeric_level)
    if not enable_sql_logs:
        console_handler.addFilter(BusinessLogicFilter())

    file_handler = RotatingFileHandler(
        os.path.join(LOG_PATH, "app.log"),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(file_formatter)
    file_handler.setLevel(logging.DEBUG)  # В файл записываем все

    error_handler = RotatingFileHandler(
        os.path.join(LOG_PATH, "errors.log"),
        maxBytes=5*1024*1024,  # 5MB
        backupCount=3,
        encoding='utf-8'
    )
    error_handler.setFormatter(file_formatter)
    error_handler.setLevel(logging.ERROR)

    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(error_handler)

    for logger_name in TECHNICAL_LOGGERS:
        module_logger = logging.getLogger(logger_name)
        module_logger.setLevel(logging.WARNING if enable_sql_logs else logging.ERROR)
        module_logger.propagate = False

    # Бизнес-логгеры пишут через корневые хендлеры
    for logger_name in BUSINESS_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.DEBUG)

    return logging.getLogger("app")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_business_event(event_type: str, message: str, **kwargs):
    """
    Логирует бизнес-событие в удобном формате

    Args:
        event_type: Тип события (article_sync_finished, locks_purged, etc.)
        message: Сообщение о событии
        **kwargs: Дополнительные параметры для логирования
    """
    logger = get_logger("business")
    extra_info = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
    if extra_info:
        logger.info(f"[{event_type.upper()}] {message} | {extra_info}")
    else:
        logger.info(f"[{event_type.upper()}] {message}")


def log_error_with_context(error: Exception, context: str = "", **kwargs):
    """
    Логирует ошибку с контекстом
    """
    logger = get_logger("errors")
    extra_info = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
    if context:
        logger.error(f"[ERROR] {context}: {str(error)} | {extra_info}")
    else:
        logger.error(f"[ERROR] {str(error)} | {extra_info}")
