"""
Trading Bot API Dependencies
Общие зависимости роутеров и разбор query/body параметров
"""

import json
from typing import Any, Dict, Optional

from fastapi import Depends, Request

from app.config.settings import Settings, get_settings
from core.bybit_client import BybitClient
from core.proxy_fallback import ProxyFallbackFetcher
from core.webhook_processor import ClientFactory, WebhookProcessor
from data.database import Database, get_database
from services.sms_service import SMSService
from utils.helpers import APIError, parse_int_strict


# ============================================================================
# ПРОВАЙДЕРЫ
# ============================================================================

def get_db() -> Database:
    return get_database()


def get_app_settings() -> Settings:
    return get_settings()


def get_client_factory(settings: Settings = Depends(get_app_settings)) -> ClientFactory:
    """Фабрика клиентов Bybit (подменяется в тестах)"""
    def factory(api_key: str, api_secret: str, environment: str = 'mainnet') -> BybitClient:
        return BybitClient(api_key, api_secret, environment, settings=settings)
    return factory


def get_sms(db: Database = Depends(get_db), settings: Settings = Depends(get_app_settings)) -> SMSService:
    return SMSService(db=db, settings=settings)


def get_webhook_processor(
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    client_factory: ClientFactory = Depends(get_client_factory)
) -> WebhookProcessor:
    return WebhookProcessor(db, settings, client_factory=client_factory)


def get_proxy_fetcher(request: Request, settings: Settings = Depends(get_app_settings)) -> ProxyFallbackFetcher:
    """Цепочка прокси строится от хоста входящего запроса"""
    return ProxyFallbackFetcher.from_request(
        request.headers.get('host'),
        request.headers.get('x-forwarded-proto'),
        settings=settings
    )


# ============================================================================
# РАЗБОР ПАРАМЕТРОВ
# ============================================================================

async def read_json_body(request: Request) -> Dict[str, Any]:
    """JSON тело запроса как dict (пустое тело -> {})"""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise APIError("Invalid JSON body", 400, code="INVALID_JSON")
    if not isinstance(body, dict):
        raise APIError("Request body must be a JSON object", 400, code="INVALID_JSON")
    return body


def parse_limit(
    value: Optional[str],
    default: int,
    max_limit: int,
    clamp: bool = True,
    min_limit: int = 1
) -> int:
    """
    Разбор limit

    clamp=True - значения больше max_limit обрезаются,
    clamp=False - отклоняются с кодом LIMIT_EXCEEDED
    """
    if value is None:
        return default

    limit = parse_int_strict(value)
    if limit is None or limit < min_limit:
        raise APIError("Limit must be a positive integer", 400, code="INVALID_LIMIT")
    if limit > max_limit:
        if clamp:
            return max_limit
        raise APIError(f"Limit cannot exceed {max_limit}", 400, code="LIMIT_EXCEEDED")
    return limit


def parse_offset(value: Optional[str]) -> int:
    if value is None:
        return 0
    offset = parse_int_strict(value)
    if offset is None or offset < 0:
        raise APIError("Offset must be a non-negative integer", 400, code="INVALID_OFFSET")
    return offset


def parse_positive_id(value: Any, message: str, code: str) -> int:
    parsed = parse_int_strict(value)
    if parsed is None or parsed < 1:
        raise APIError(message, 400, code=code)
    return parsed


def validate_side_param(side: Optional[str]) -> Optional[str]:
    """Фильтр стороны: только Buy/Sell"""
    if side is None:
        return None
    if side not in ('Buy', 'Sell'):
        raise APIError("Side must be either 'Buy' or 'Sell'", 400, code="INVALID_SIDE")
    return side


def require_fields(body: Dict[str, Any], fields: tuple, message: str = "Missing required fields") -> None:
    """Обязательные поля тела (сообщение в поле message, как у биржевых эндпоинтов)"""
    if any(not body.get(name) for name in fields):
        raise APIError(message, 400, response_data={'message': message})


def server_info(request: Request) -> Dict[str, Any]:
    """Информация о сервере для алертов CloudFront"""
    return {
        'host': request.headers.get('host'),
        'region': request.headers.get('x-vercel-ip-country') or request.headers.get('cf-ipcountry') or 'Unknown',
        'userAgent': request.headers.get('user-agent'),
    }

