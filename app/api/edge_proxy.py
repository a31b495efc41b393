"""
Trading Bot Edge Proxy Router
Проброс запросов к Bybit через этот сервер (обход гео-блокировки CloudFront)
"""

import asyncio
from typing import Dict, Optional, Tuple

import aiohttp
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from app.api.dependencies import get_app_settings
from app.config.settings import Settings, get_settings
from utils.logger import setup_logger

router = APIRouter(prefix=get_settings().BYBIT_EDGE_PROXY_PATH, tags=["Edge Proxy"])
logger = setup_logger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': '*',
}

SKIPPED_HEADERS = frozenset({
    'host', 'content-length', 'content-type',
    'connection', 'keep-alive', 'transfer-encoding',
})


async def forward_request(
    method: str,
    url: str,
    headers: Dict[str, str],
    body: Optional[bytes],
    timeout: int
) -> Tuple[int, str]:
    """Запрос к целевому API: (status, text)"""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.request(method, url, headers=headers, data=body) as response:
            return response.status, await response.text()


@router.api_route("/{path:path}", methods=["GET", "POST"])
async def proxy_bybit(path: str, request: Request, settings: Settings = Depends(get_app_settings)):
    query = request.url.query
    target_url = f"{settings.BYBIT_EDGE_PROXY_TARGET}/{path}" + (f"?{query}" if query else "")

    headers = {
        key: value for key, value in request.headers.items()
        if key.lower() not in SKIPPED_HEADERS
    }
    headers['Content-Type'] = 'application/json'

    body = await request.body() if request.method == 'POST' else None
    logger.debug(f"🔀 Edge proxy {request.method} {target_url}")

    try:
        status, text = await forward_request(request.method, target_url, headers, body or None, settings.BYBIT_TIMEOUT)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"❌ Edge proxy error: {e}")
        return JSONResponse(
            content={'retCode': -1, 'retMsg': f"Proxy error: {e or 'timeout'}"},
            status_code=500
        )

    logger.debug(f"🔀 Edge proxy response: {status}")
    return Response(
        content=text,
        status_code=status,
        media_type='application/json',
        headers=CORS_HEADERS,
    )


@router.options("/{path:path}")
async def proxy_preflight(path: str):
    return Response(status_code=204, headers=CORS_HEADERS)
