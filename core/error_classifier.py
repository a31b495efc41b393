"""
Trading Bot Error Classifier
Классификация ошибок биржи: временные ошибки API, ошибки сделки, неизвестные
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Типы ошибок исполнения"""
    API_TEMPORARY = "api_temporary"
    TRADE_FAULT = "trade_fault"
    UNKNOWN = "unknown"


API_TEMPORARY_KEYWORDS = (
    'rate limit',
    'too many requests',
    'timeout',
    'timed out',
    '503',
    '502',
    '504',
    'service unavailable',
    'connection',
    'temporary',
    'try again',
    'retry',
    'network',
    'unavailable',
)

TRADE_FAULT_KEYWORDS = (
    'instrument not found',
    'insufficient balance',
    'insufficient funds',
    'invalid price',
    'already closed',
    'position not found',
    'would trigger immediately',
    'order size',
    'minimum',
    'maximum',
    'invalid parameter',
    'not supported',
    'margin insufficient',
    'leverage',
    'position side',
    'order already',
)

API_TEMPORARY_RETRY_MS = 2000
UNKNOWN_RETRY_MS = 3000


@dataclass
class ClassifiedError:
    """Результат классификации"""
    type: ErrorType
    message: str
    code: Optional[str] = None
    is_permanent: bool = False
    should_retry: bool = True
    retry_after_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['type'] = self.type.value
        return data


def classify_error(error_code: Any, error_message: str) -> ClassifiedError:
    """
    Классификация ошибки по тексту сообщения.
    Временные ошибки проверяются первыми.
    """
    message = error_message or ""
    lowered = message.lower()
    code = str(error_code) if error_code is not None else None

    if any(keyword in lowered for keyword in API_TEMPORARY_KEYWORDS):
        return ClassifiedError(
            type=ErrorType.API_TEMPORARY,
            message=message,
            code=code,
            is_permanent=False,
            should_retry=True,
            retry_after_ms=API_TEMPORARY_RETRY_MS,
        )

    if any(keyword in lowered for keyword in TRADE_FAULT_KEYWORDS):
        return ClassifiedError(
            type=ErrorType.TRADE_FAULT,
            message=message,
            code=code,
            is_permanent=True,
            should_retry=False,
        )

    return ClassifiedError(
        type=ErrorType.UNKNOWN,
        message=message,
        code=code,
        is_permanent=False,
        should_retry=True,
        retry_after_ms=UNKNOWN_RETRY_MS,
    )


def requires_permanent_lock(error_type: ErrorType) -> bool:
    return error_type == ErrorType.TRADE_FAULT


def can_retry(error_type: ErrorType) -> bool:
    return error_type in (ErrorType.API_TEMPORARY, ErrorType.UNKNOWN)
