"""
Trading Bot Proxy Fallback
Запросы к Bybit через цепочку прокси для обхода гео-блокировки CloudFront
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp

from app.config.settings import Settings, get_settings
from core.bybit_client import BybitAPIError, build_auth_headers, build_query_string
from core.rate_limiter import RateLimiter, get_bybit_rate_limiter
from utils.helpers import NetworkError, truncate_string
from utils.logger import setup_logger


LOCAL_HOSTS = ('localhost', '127.0.0.1')


@dataclass
class ProxyCandidate:
    """Один upstream для запроса"""
    url: str
    kind: str  # env, edge, relay, direct

    @property
    def is_relay(self) -> bool:
        """Публичный CORS relay получает полный URL и не получает auth заголовки"""
        return self.kind == 'relay'


@dataclass
class ProxyFetchResult:
    result: Dict[str, Any]
    url: str
    attempts: int


def build_proxy_candidates(
    request_host: Optional[str],
    request_proto: Optional[str] = None,
    env_proxy: Optional[str] = None,
    settings: Optional[Settings] = None
) -> List[ProxyCandidate]:
    """
    Упорядоченный список upstream:
    1. BYBIT_PROXY_URL
    2. edge прокси этого же сервера (если хост не локальный)
    3. публичный CORS relay
    4. прямой api.bybit.com
    """
    settings = settings or get_settings()
    env_proxy = settings.BYBIT_PROXY_URL if env_proxy is None else env_proxy
    candidates: List[ProxyCandidate] = []

    if env_proxy:
        candidates.append(ProxyCandidate(env_proxy.rstrip('/'), 'env'))

    if request_host and not any(local in request_host for local in LOCAL_HOSTS):
        proto = request_proto or 'https'
        candidates.append(ProxyCandidate(f"{proto}://{request_host}{settings.BYBIT_EDGE_PROXY_PATH}", 'edge'))

    if settings.BYBIT_PUBLIC_PROXY_URL:
        candidates.append(ProxyCandidate(settings.BYBIT_PUBLIC_PROXY_URL, 'relay'))

    candidates.append(ProxyCandidate(settings.BYBIT_MAINNET_URL, 'direct'))
    return candidates


class ProxyFallbackFetcher:
    """
    Подписанный GET к Bybit с перебором прокси

    Следующий кандидат пробуется при HTTP 403, невалидном JSON,
    retCode != 0 или сетевой ошибке.
    """

    def __init__(
        self,
        candidates: List[ProxyCandidate],
        settings: Optional[Settings] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.ProxyFallbackFetcher")
        self.candidates = candidates
        self.rate_limiter = rate_limiter or get_bybit_rate_limiter()
        self.timeout = self.settings.BYBIT_TIMEOUT

        self.stats = {
            'total_fetches': 0,
            'successful_fetches': 0,
            'failed_attempts': 0,
            'geo_blocks': 0,
        }

    @classmethod
    def from_request(
        cls,
        request_host: Optional[str],
        request_proto: Optional[str] = None,
        settings: Optional[Settings] = None
    ) -> "ProxyFallbackFetcher":
        settings = settings or get_settings()
        return cls(build_proxy_candidates(request_host, request_proto, settings=settings), settings=settings)

    async def _fetch(self, url: str, headers: Dict[str, str]) -> Tuple[int, str]:
        """Сырой GET: (status, text)"""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, headers=headers) as response:
                return response.status, await response.text()

    def _build_url(self, candidate: ProxyCandidate, endpoint: str, query: str) -> str:
        path = f"{endpoint}?{query}" if query else endpoint
        if candidate.is_relay:
            return f"{candidate.url}{quote(self.settings.BYBIT_MAINNET_URL + path, safe='')}"
        return f"{candidate.url}{path}"

    async def fetch(
        self,
        endpoint: str,
        params: Dict[str, Any],
        api_key: str,
        api_secret: str
    ) -> ProxyFetchResult:
        """
        Первый успешный result из цепочки

        Raises:
            Последнюю ошибку, если все кандидаты провалились
        """
        self.stats['total_fetches'] += 1
        query = build_query_string(params)
        last_error: Optional[Exception] = None

        for attempt, candidate in enumerate(self.candidates, start=1):
            url = self._build_url(candidate, endpoint, query)
            if candidate.is_relay:
                headers = {'Content-Type': 'application/json'}
            else:
                # Подпись заново на каждую попытку - свежий timestamp
                headers = build_auth_headers(api_key, api_secret, query, self.settings.BYBIT_RECV_WINDOW)

            self.logger.debug(f"🔄 [{candidate.kind}] GET {truncate_string(url, 120)}")

            try:
                status, text = await self.rate_limiter.execute(lambda: self._fetch(url, headers))
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = NetworkError(f"{candidate.kind} proxy failed: {e or 'timeout'}")
                self._attempt_failed(candidate, last_error)
                continue

            if status == 403:
                self.stats['geo_blocks'] += 1
                last_error = NetworkError("Geo-blocked by CloudFront")
                self._attempt_failed(candidate, last_error)
                continue

            try:
                data = json.loads(text)
            except (TypeError, ValueError):
                last_error = NetworkError(f"Invalid JSON from {candidate.kind} proxy (HTTP {status})")
                self._attempt_failed(candidate, last_error)
                continue

            if not isinstance(data, dict) or data.get('retCode') != 0:
                ret_msg = data.get('retMsg', 'Unknown error') if isinstance(data, dict) else 'Unexpected response'
                ret_code = data.get('retCode', -1) if isinstance(data, dict) else -1
                last_error = BybitAPIError(ret_code=ret_code, ret_msg=ret_msg)
                self._attempt_failed(candidate, last_error)
                continue

            self.stats['successful_fetches'] += 1
            self.logger.info(f"✅ Bybit data fetched via {candidate.kind} ({candidate.url})")
            return ProxyFetchResult(result=data.get('result') or {}, url=candidate.url, attempts=attempt)

        self.logger.error(f"❌ All proxy attempts failed for {endpoint}: {last_error}")
        raise last_error or NetworkError("All proxy attempts failed")

    def _attempt_failed(self, candidate: ProxyCandidate, error: Exception) -> None:
        self.stats['failed_attempts'] += 1
        self.logger.warning(f"⚠️ [{candidate.kind}] {candidate.url} failed: {error}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'candidates': [c.kind for c in self.candidates],
        }
