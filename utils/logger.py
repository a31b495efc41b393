"""
Trading Bot Logging System
Централизованная система логирования с поддержкой файлов и консоли
"""

import re
import sys
import time
import logging
import logging.handlers
import json
import traceback
from pathlib import Path
from datetime import datetime
from functools import lru_cache
from typing import Optional, Dict

import psutil


# ============================================================================
# КОНСТАНТЫ И КОНФИГУРАЦИЯ
# ============================================================================

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Эмодзи для разных уровней логирования
LOG_EMOJIS = {
    'DEBUG': '🔍',
    'INFO': 'ℹ️',
    'WARNING': '⚠️',
    'ERROR': '❌',
    'CRITICAL': '🔥'
}

# Цвета для консольного вывода
LOG_COLORS = {
    'DEBUG': '\033[36m',     # Cyan
    'INFO': '\033[32m',      # Green
    'WARNING': '\033[33m',   # Yellow
    'ERROR': '\033[31m',     # Red
    'CRITICAL': '\033[35m',  # Magenta
    'RESET': '\033[0m'       # Reset
}

# Стандартные атрибуты LogRecord, не попадающие в JSON как extra
_RECORD_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName', 'taskName',
    'processName', 'process', 'exc_info', 'exc_text', 'stack_info'
}


# ============================================================================
# КАСТОМНЫЕ ФОРМАТТЕРЫ
# ============================================================================

class ColoredFormatter(logging.Formatter):
    """
    Форматтер с цветным выводом для консоли
    """

    def format(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        color = LOG_COLORS.get(level_name, LOG_COLORS['RESET'])
        emoji = LOG_EMOJIS.get(level_name, '')
        reset = LOG_COLORS['RESET']

        # Создаем копию record чтобы не изменять оригинал
        record_copy = logging.makeLogRecord(record.__dict__)
        record_copy.levelname = f"{color}{emoji} {level_name}{reset}"

        return super().format(record_copy)


class JSONFormatter(logging.Formatter):
    """
    JSON форматтер для структурированного логирования
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        # Дополнительные поля из extra
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)


# ============================================================================
# ФИЛЬТРЫ
# ============================================================================

class SensitiveDataFilter(logging.Filter):
    """
    Фильтр для скрытия чувствительных данных
    """

    SENSITIVE_PATTERNS = [
        'api_key', 'apikey', 'api_secret', 'apisecret', 'password', 'token',
        'secret', 'x-bapi-sign', 'auth_token', 'authtoken'
    ]

    MASK_PATTERNS = [
        (re.compile(r'(api_?key["\']?\s*[:=]\s*["\']?)([^"\',>\s]+)', re.IGNORECASE), r'\1***MASKED***'),
        (re.compile(r'(api_?secret["\']?\s*[:=]\s*["\']?)([^"\',>\s]+)', re.IGNORECASE), r'\1***MASKED***'),
        (re.compile(r'(auth_?token["\']?\s*[:=]\s*["\']?)([^"\',>\s]+)', re.IGNORECASE), r'\1***MASKED***'),
        (re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\',>\s]+)', re.IGNORECASE), r'\1***MASKED***'),
        (re.compile(r'(x-bapi-sign["\']?\s*[:=]\s*["\']?)([^"\',>\s]+)', re.IGNORECASE), r'\1***MASKED***'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage().lower()

        for pattern in self.SENSITIVE_PATTERNS:
            if pattern in message:
                record.msg = self._mask_sensitive_data(record.getMessage())
                record.args = ()
                break

        return True

    def _mask_sensitive_data(self, message: str) -> str:
        """Маскировка чувствительных данных"""
        for pattern, replacement in self.MASK_PATTERNS:
            message = pattern.sub(replacement, message)
        return message


class PerformanceFilter(logging.Filter):
    """
    Фильтр для добавления информации о производительности
    """

    def __init__(self):
        super().__init__()
        self._process = psutil.Process()

    def filter(self, record: logging.LogRecord) -> bool:
        record.high_precision_time = time.perf_counter()
        record.memory_mb = round(self._process.memory_info().rss / 1024 / 1024, 2)
        record.cpu_percent = round(self._process.cpu_percent(), 2)
        return True


# ============================================================================
# ОСНОВНОЙ КЛАСС ЛОГИРОВАНИЯ
# ============================================================================

class TradingBotLogger:
    """
    Главный класс для управления логированием торгового бота
    """

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._handlers: Dict[str, logging.Handler] = {}
        self._initialized = False

    def setup(
        self,
        log_level: str = "INFO",
        log_format: Optional[str] = None,
        log_date_format: Optional[str] = None,
        log_to_file: bool = True,
        log_file_path: str = "logs/trading_bot.log",
        log_file_max_size: int = 10 * 1024 * 1024,  # 10MB
        log_file_backup_count: int = 5,
        colored_console: bool = True,
        json_format: bool = False,
        enable_performance_logging: bool = False,
        **kwargs
    ) -> None:
        """
        Настройка системы логирования

        Args:
            log_level: Уровень логирования
            log_format: Формат логов
            log_date_format: Формат даты
            log_to_file: Логировать в файл
            log_file_path: Путь к файлу логов
            log_file_max_size: Максимальный размер файла
            log_file_backup_count: Количество архивных файлов
            colored_console: Цветной вывод в консоль
            json_format: JSON формат для файлов
            enable_performance_logging: Добавлять память/CPU к записям
        """
        if self._initialized:
            return

        log_format = log_format or DEFAULT_FORMAT
        log_date_format = log_date_format or DEFAULT_DATE_FORMAT

        if colored_console:
            console_formatter = ColoredFormatter(log_format, log_date_format)
        else:
            console_formatter = logging.Formatter(log_format, log_date_format)

        if json_format:
            file_formatter = JSONFormatter()
        else:
            file_formatter = logging.Formatter(log_format, log_date_format)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(console_formatter)
        console_handler.addFilter(SensitiveDataFilter())

        if enable_performance_logging:
            console_handler.addFilter(PerformanceFilter())

        self._handlers['console'] = console_handler

        if log_to_file:
            Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=log_file_max_size,
                backupCount=log_file_backup_count,
                encoding='utf-8'
            )
            file_handler.setFormatter(file_formatter)
            file_handler.addFilter(SensitiveDataFilter())

            if enable_performance_logging:
                file_handler.addFilter(PerformanceFilter())

            self._handlers['file'] = file_handler

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level.upper()))

        # Очищаем существующие handlers
        root_logger.handlers.clear()

        for handler in self._handlers.values():
            root_logger.addHandler(handler)

        self._initialized = True

        logger = self.get_logger("system.logger")
        logger.info(f"🚀 Trading Bot Logger initialized (level: {log_level}, file: {log_to_file})")

    def get_logger(self, name: str) -> logging.Logger:
        """
        Получение логгера по имени с кешированием
        """
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)

        return self._loggers[name]

    def shutdown(self) -> None:
        """
        Корректное завершение работы логгеров
        """
        root_logger = logging.getLogger()
        for handler in self._handlers.values():
            root_logger.removeHandler(handler)
            handler.close()

        self._handlers.clear()
        self._initialized = False


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

@lru_cache()
def get_logger_instance() -> TradingBotLogger:
    """
    Получение единственного экземпляра логгера
    """
    return TradingBotLogger()


# Глобальный экземпляр
bot_logger = get_logger_instance()


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def setup_logger(
    name: str,
    log_level: str = "INFO",
    **kwargs
) -> logging.Logger:
    """
    Быстрая настройка логгера
    """
    if not bot_logger._initialized:
        bot_logger.setup(log_level=log_level, log_to_file=False, **kwargs)

    return bot_logger.get_logger(name)


def configure_logging(settings) -> None:
    """
    Настройка логирования из Settings при старте приложения
    """
    if bot_logger._initialized:
        bot_logger.shutdown()

    bot_logger.setup(
        log_level=settings.LOG_LEVEL.value,
        log_format=settings.LOG_FORMAT,
        log_date_format=settings.LOG_DATE_FORMAT,
        log_to_file=settings.LOG_TO_FILE,
        log_file_path=settings.LOG_FILE_PATH,
        log_file_max_size=settings.LOG_FILE_MAX_SIZE,
        log_file_backup_count=settings.LOG_FILE_BACKUP_COUNT,
        colored_console=not settings.is_production,
        json_format=settings.LOG_JSON or settings.is_production,
        enable_performance_logging=settings.PERFORMANCE_LOGGING,
    )

    configure_external_loggers("WARNING" if settings.is_production else "INFO")


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def configure_external_loggers(level: str = "WARNING"):
    """
    Настройка уровня логирования для внешних библиотек
    """
    external_loggers = [
        'aiohttp.access',
        'aiohttp.client',
        'sqlalchemy.engine',
        'aiosqlite',
        'uvicorn.access',
        'httpx',
    ]

    for logger_name in external_loggers:
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))
