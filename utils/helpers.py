"""
Trading Bot Helper Functions
Вспомогательные функции: время, числа, строки, JSON, подписи и исключения
"""

import hashlib
import hmac
import json
import math
import re
import time
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Union

import psutil

from utils.logger import setup_logger


# ============================================================================
# TYPE DEFINITIONS
# ============================================================================

Number = Union[int, float]


# ============================================================================
# CONSTANTS
# ============================================================================

_CAMEL_BOUNDARY = re.compile(r'(?<!^)(?=[A-Z])')
_SNAKE_BOUNDARY = re.compile(r'_([a-z0-9])')

logger = setup_logger(__name__)


# ============================================================================
# DATETIME AND TIME UTILITIES
# ============================================================================

def get_current_timestamp() -> int:
    """Получение текущего timestamp в миллисекундах"""
    return int(time.time() * 1000)


def get_current_timestamp_seconds() -> int:
    """Текущий unix timestamp в секундах"""
    return int(time.time())


def get_current_utc_datetime() -> datetime:
    """Получение текущего UTC datetime"""
    return datetime.now(timezone.utc)


def utc_iso(dt: Optional[datetime] = None) -> str:
    """ISO-8601 строка в UTC с миллисекундами и суффиксом Z"""
    dt = dt or get_current_utc_datetime()
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def days_ago_iso(days: Number) -> str:
    return utc_iso(get_current_utc_datetime() - timedelta(days=days))


def timestamp_to_datetime(timestamp: Union[int, float]) -> datetime:
    """Конвертация timestamp в datetime (поддерживает секунды и миллисекунды)"""
    if timestamp > 1e10:  # Миллисекунды
        timestamp = timestamp / 1000
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def parse_iso_datetime(value: str) -> Optional[datetime]:
    """Парсинг ISO даты, None если формат неверный"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================================
# NUMERIC UTILITIES
# ============================================================================

def safe_float(value: Any, default: float = 0.0) -> float:
    """Безопасная конвертация в float"""
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (ValueError, TypeError):
        return default


def safe_int(value: Any, default: int = 0) -> int:
    """Безопасная конвертация в int"""
    try:
        if value is None or value == "":
            return default
        return int(float(value))  # Через float для обработки "123.0"
    except (ValueError, TypeError):
        return default


def parse_int_strict(value: Any) -> Optional[int]:
    """
    Целое число из query параметра.
    Повторяет parseInt: ведущие цифры берутся, мусор после них отбрасывается.
    """
    if value is None:
        return None
    match = re.match(r'^\s*([+-]?\d+)', str(value))
    if not match:
        return None
    return int(match.group(1))


def parse_float_strict(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (ValueError, TypeError):
        return None
    if not math.isfinite(result):
        return None
    return result


def format_fixed(value: Number, digits: int) -> str:
    """Форматирование числа с фиксированным количеством знаков"""
    return f"{float(value):.{digits}f}"


def round_to(value: Number, digits: int = 2) -> float:
    return round(float(value), digits)


# ============================================================================
# STRING UTILITIES
# ============================================================================

def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Обрезка строки с добавлением суффикса"""
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix


def mask_secret(value: Optional[str], visible: int = 8) -> str:
    """Маскировка API ключа для логов"""
    if not value:
        return ""
    return f"{value[:visible]}..."


def camel_to_snake(name: str) -> str:
    """positionSizeFixed -> position_size_fixed"""
    return _CAMEL_BOUNDARY.sub('_', name).lower()


def snake_to_camel(name: str) -> str:
    """position_size_fixed -> positionSizeFixed"""
    return _SNAKE_BOUNDARY.sub(lambda m: m.group(1).upper(), name)


def convert_keys_to_camel(data: Any) -> Any:
    """Рекурсивная конвертация ключей словаря в camelCase"""
    if isinstance(data, list):
        return [convert_keys_to_camel(item) for item in data]
    if isinstance(data, dict):
        return {snake_to_camel(str(key)): convert_keys_to_camel(value) for key, value in data.items()}
    return data


def split_csv_param(value: Optional[str]) -> List[str]:
    """'A, B,C' -> ['A', 'B', 'C']"""
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


# ============================================================================
# JSON UTILITIES
# ============================================================================

def safe_json_loads(json_str: Optional[str], default: Any = None) -> Any:
    """Безопасный парсинг JSON"""
    try:
        return json.loads(json_str)
    except (json.JSONDecodeError, TypeError):
        return default


def safe_json_dumps(data: Any, default: str = "{}") -> str:
    """Безопасная сериализация в JSON"""
    try:
        return json.dumps(data, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return default


# ============================================================================
# ENCRYPTION AND HASHING UTILITIES
# ============================================================================

def generate_signature(
    secret: str,
    message: str,
    algorithm: str = 'sha256'
) -> str:
    """Генерация HMAC подписи (hex)"""
    secret_bytes = secret.encode('utf-8')
    message_bytes = message.encode('utf-8')

    if algorithm.lower() == 'sha256':
        signature = hmac.new(secret_bytes, message_bytes, hashlib.sha256)
    elif algorithm.lower() == 'sha512':
        signature = hmac.new(secret_bytes, message_bytes, hashlib.sha512)
    else:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    return signature.hexdigest()


# ============================================================================
# PERFORMANCE AND PROFILING
# ============================================================================

class Timer:
    """Контекстный менеджер для измерения времени выполнения"""

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.end_time = time.perf_counter()
        duration = self.end_time - self.start_time
        logger.debug(f"⏱️ {self.name} took {duration:.4f}s")

    @property
    def elapsed(self) -> float:
        """Время выполнения в секундах"""
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return 0.0


def get_memory_usage() -> Dict[str, float]:
    """Получение информации об использовании памяти"""
    process = psutil.Process()
    memory_info = process.memory_info()

    return {
        'rss_mb': round(memory_info.rss / 1024 / 1024, 2),  # Resident Set Size
        'vms_mb': round(memory_info.vms / 1024 / 1024, 2),  # Virtual Memory Size
        'percent': round(process.memory_percent(), 2)
    }


# ============================================================================
# EXCEPTION HANDLING
# ============================================================================

class TradingBotError(Exception):
    """Базовое исключение для торгового бота"""
    pass


class NetworkError(TradingBotError):
    """Сетевая ошибка"""
    pass


class APIError(TradingBotError):
    """
    Ошибка API, отдаваемая клиенту как JSON
    {"success": false, "error": message, "code": code, ...response_data}
    """
    def __init__(
        self,
        message: str,
        status_code: int = None,
        response_data: Dict = None,
        code: Optional[str] = None
    ):
        super().__init__(message)
        self.status_code = status_code or 400
        self.response_data = response_data or {}
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {'success': False, 'error': str(self)}
        if self.code:
            body['code'] = self.code
        body.update(self.response_data)
        return body

