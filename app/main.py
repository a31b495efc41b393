"""
Trading Bot Main Application
FastAPI сервер: вебхук TradingView, дашборд API и операции с Bybit
"""

from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

# Внутренние импорты
from app.api import ROUTERS
from app.config.settings import get_settings
from core.rate_limiter import get_bybit_rate_limiter
from data.database import get_database, init_database
from utils.helpers import APIError, get_memory_usage, utc_iso
from utils.logger import configure_logging, setup_logger


# ============================================================================
# ГЛОБАЛЬНЫЕ ПЕРЕМЕННЫЕ
# ============================================================================

settings = get_settings()
logger = setup_logger(__name__)


# ============================================================================
# LIFECYCLE MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Управление жизненным циклом приложения
    """
    # STARTUP
    logger.info("🚀 Starting Trading Bot...")

    try:
        await startup_sequence()
        logger.info("✅ Trading Bot started successfully")
        yield
    except Exception as e:
        logger.error(f"❌ Failed to start Trading Bot: {e}")
        raise
    finally:
        # SHUTDOWN
        logger.info("🔄 Shutting down Trading Bot...")
        await shutdown_sequence()
        logger.info("✅ Trading Bot shut down gracefully")


async def startup_sequence():
    """
    Последовательность запуска компонентов
    """
    configure_logging(settings)
    settings.log_startup_config(logger)

    logger.info("📦 Initializing database...")
    database = await init_database(settings)

    bot_settings = await database.ensure_bot_settings()
    if not bot_settings.has_credentials:
        logger.warning("⚠️ Bybit API credentials are not configured - trading disabled until set")
    if not bot_settings.bot_enabled:
        logger.info("🔴 Bot is disabled in settings")


async def shutdown_sequence():
    """
    Последовательность завершения работы
    """
    logger.info("📦 Closing database connections...")
    await get_database().close()


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title=settings.APP_NAME,
    description="TradingView webhook -> Bybit USDT Perpetual trading bot",
    version=settings.VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for router in ROUTERS:
    app.include_router(router)


# ============================================================================
# ОБРАБОТКА ОШИБОК
# ============================================================================

@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"❌ Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={'success': False, 'error': f"Internal server error: {exc}"}
    )


# ============================================================================
# API ENDPOINTS - CORE
# ============================================================================

@app.get("/", response_model=dict)
async def root():
    """Корневой endpoint"""
    return {
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "status": "running",
        "webhook": "/api/webhook/tradingview",
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    """Проверка состояния системы"""
    database = get_database()
    db_health = await database.health_check()
    db_stats = await database.get_database_stats()

    return JSONResponse(
        status_code=200 if db_health.is_healthy else 503,
        content={
            "status": "healthy" if db_health.is_healthy else "unhealthy",
            "timestamp": utc_iso(),
            "database": {
                "healthy": db_health.is_healthy,
                "connection": db_health.connection_ok,
                "tables": db_health.tables_exist,
                "recentActivity": db_health.recent_activity,
                "error": db_health.error_message,
            },
            "stats": asdict(db_stats),
            "rateLimiter": get_bybit_rate_limiter().get_status(),
            "memory": get_memory_usage(),
        }
    )


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=int(settings.PORT),
        reload=not settings.is_production,
        log_level=settings.LOG_LEVEL.value.lower(),
        access_log=True
    )
