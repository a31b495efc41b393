"""
Trading Bot Rate Limiter
Ограничение исходящих запросов к Bybit API: параллелизм + минимальный интервал
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from app.config.settings import get_settings
from utils.logger import setup_logger


T = TypeVar('T')
CoroFactory = Callable[[], Awaitable[T]]


class RateLimiter:
    """
    Очередь запросов с ограничением

    - не более max_concurrent одновременных вызовов
    - старты вызовов разнесены минимум на min_interval_ms
    """

    def __init__(self, max_concurrent: int = 5, min_interval_ms: int = 100):
        self.max_concurrent = max_concurrent
        self.min_interval = min_interval_ms / 1000
        self.logger = setup_logger(f"{__name__}.RateLimiter")

        self._running = 0
        self._waiting = 0
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._next_slot = 0.0

        self.stats = {
            'total_executed': 0,
            'total_failed': 0,
            'total_delayed': 0,
        }

    async def execute(self, factory: CoroFactory) -> T:
        """
        Выполнение корутины из factory с учетом лимитов.
        Исключения пробрасываются вызывающему.
        """
        semaphore = self._get_semaphore()

        self._waiting += 1
        try:
            await semaphore.acquire()
        finally:
            self._waiting -= 1

        self._running += 1
        try:
            await self._wait_interval()
            result = await factory()
            self.stats['total_executed'] += 1
            return result
        except Exception:
            self.stats['total_failed'] += 1
            raise
        finally:
            self._running -= 1
            semaphore.release()

    async def execute_many(self, factories: List[CoroFactory]) -> List[Any]:
        """Последовательное выполнение списка вызовов"""
        results = []
        for factory in factories:
            results.append(await self.execute(factory))
        return results

    def get_status(self) -> Dict[str, int]:
        """Статус очереди"""
        return {
            'queueLength': self._waiting,
            'running': self._running,
            'maxConcurrent': self.max_concurrent,
        }

    # ========================================================================
    # PRIVATE
    # ========================================================================

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Семафор привязан к event loop, общий лимитер переживает смену loop
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
            self._loop = loop
        return self._semaphore

    async def _wait_interval(self) -> None:
        # Слот резервируется до сна, поэтому параллельные вызовы не стартуют одновременно
        now = time.monotonic()
        slot = max(now, self._next_slot)
        self._next_slot = slot + self.min_interval

        delay = slot - now
        if delay > 0:
            self.stats['total_delayed'] += 1
            await asyncio.sleep(delay)


# ============================================================================
# SINGLETON ДЛЯ BYBIT
# ============================================================================

_bybit_rate_limiter: Optional[RateLimiter] = None


def get_bybit_rate_limiter() -> RateLimiter:
    """Общий лимитер для всех запросов к Bybit"""
    global _bybit_rate_limiter
    if _bybit_rate_limiter is None:
        settings = get_settings()
        _bybit_rate_limiter = RateLimiter(settings.BYBIT_MAX_CONCURRENT, settings.BYBIT_MIN_INTERVAL_MS)
    return _bybit_rate_limiter
