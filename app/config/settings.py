"""
Trading Bot Configuration Settings
Конфигурация сервиса вебхуков TradingView -> Bybit
"""

import logging
from typing import List, Dict, Any
from functools import lru_cache
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Типы окружений"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Уровни логирования"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Главный класс конфигурации с валидацией

    Учетные данные биржи и Twilio хранятся в таблице bot_settings,
    здесь только инфраструктурные параметры.
    """

    # ============================================================================
    # ОСНОВНЫЕ НАСТРОЙКИ ПРИЛОЖЕНИЯ
    # ============================================================================

    APP_NAME: str = Field(default="TradingView Bybit Bot", description="Название приложения")
    VERSION: str = Field(default="1.0.0", description="Версия приложения")
    ENVIRONMENT: Environment = Field(default=Environment.DEVELOPMENT, description="Окружение")
    DEBUG: bool = Field(default=False, description="Режим отладки")

    # Server настройки
    HOST: str = Field(default="0.0.0.0", description="IP адрес сервера")
    PORT: int = Field(default=8000, description="Порт сервера")


    # ============================================================================
    # BYBIT API НАСТРОЙКИ
    # ============================================================================

    BYBIT_MAINNET_URL: str = Field(default="https://api.bybit.com", description="Bybit mainnet")
    BYBIT_TESTNET_URL: str = Field(default="https://api-testnet.bybit.com", description="Bybit testnet")
    BYBIT_DEMO_URL: str = Field(default="https://api-demo.bybit.com", description="Bybit demo trading")

    BYBIT_RECV_WINDOW: int = Field(default=5000, description="Receive window (ms)")
    BYBIT_TIMEOUT: int = Field(default=10, description="Request timeout (seconds)")

    # Ожидание между market ордером и установкой SL/TP
    BYBIT_TPSL_DELAY: float = Field(default=0.5, description="Пауза перед trading-stop (seconds)")

    # Rate limiting исходящих запросов
    BYBIT_MAX_CONCURRENT: int = Field(default=5, description="Макс параллельных запросов к Bybit")
    BYBIT_MIN_INTERVAL_MS: int = Field(default=100, description="Мин интервал между запросами (ms)")


    # ============================================================================
    # PROXY НАСТРОЙКИ (обход гео-блокировки CloudFront)
    # ============================================================================

    BYBIT_PROXY_URL: str = Field(default="", description="Приоритетный прокси для Bybit")
    BYBIT_PUBLIC_PROXY_URL: str = Field(
        default="https://api.allorigins.win/raw?url=",
        description="Публичный CORS прокси (без auth заголовков)"
    )
    BYBIT_EDGE_PROXY_PATH: str = Field(default="/api/bybit-edge-proxy", description="Путь edge прокси")
    BYBIT_EDGE_PROXY_TARGET: str = Field(default="https://api.bybit.com", description="Куда проксирует edge")

    CLOUDFRONT_LOCK_RESET_SECONDS: int = Field(default=300, description="Сброс флага shutdown")


    # ============================================================================
    # SMS (TWILIO) НАСТРОЙКИ
    # ============================================================================

    TWILIO_API_URL: str = Field(default="https://api.twilio.com/2010-04-01", description="Twilio REST API")
    SMS_TIMEOUT: int = Field(default=10, description="Timeout отправки SMS (seconds)")
    SMS_MAX_ATTEMPTS: int = Field(default=5, description="Максимум попыток отправки")
    SMS_BASE_DELAY_MS: int = Field(default=500, description="Базовая задержка backoff (ms)")
    SMS_MAX_DELAY_MS: int = Field(default=30000, description="Максимальная задержка backoff (ms)")
    SMS_MAX_LENGTH: int = Field(default=160, description="Макс длина SMS")


    # ============================================================================
    # БАЗА ДАННЫХ НАСТРОЙКИ
    # ============================================================================

    DATABASE_URL: str = Field(default="sqlite:///trading_bot.db", description="URL базы данных")
    DATABASE_ECHO: bool = Field(default=False, description="Логировать SQL запросы")
    DATABASE_POOL_TIMEOUT: int = Field(default=30, description="Pool timeout")
    DATABASE_POOL_RECYCLE: int = Field(default=3600, description="Connection recycle time")

    ALERT_RETENTION_DAYS: int = Field(default=30, description="Срок хранения алертов по умолчанию")
    CLEANUP_BATCH_SIZE: int = Field(default=1000, description="Размер пачки при удалении")


    # ============================================================================
    # ЛОГИРОВАНИЕ
    # ============================================================================

    LOG_LEVEL: LogLevel = Field(default=LogLevel.INFO, description="Уровень логирования")
    LOG_FORMAT: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Формат логов"
    )
    LOG_DATE_FORMAT: str = Field(default="%Y-%m-%d %H:%M:%S", description="Формат даты в логах")

    # File logging
    LOG_TO_FILE: bool = Field(default=True, description="Логировать в файл")
    LOG_FILE_PATH: str = Field(default="logs/trading_bot.log", description="Путь к файлу логов")
    LOG_FILE_MAX_SIZE: int = Field(default=10485760, description="Макс размер файла логов (10MB)")
    LOG_FILE_BACKUP_COUNT: int = Field(default=5, description="Количество архивных файлов логов")
    LOG_JSON: bool = Field(default=False, description="JSON формат файловых логов")
    PERFORMANCE_LOGGING: bool = Field(default=False, description="Память/CPU в записях логов")

    # Request logging
    LOG_RESPONSES: bool = Field(default=False, description="Логировать ответы Bybit API")


    # ============================================================================
    # БЕЗОПАСНОСТЬ
    # ============================================================================

    CORS_ORIGINS: List[str] = Field(default=["*"], description="CORS origins")


    # ============================================================================
    # VALIDATORS
    # ============================================================================

    @field_validator('ENVIRONMENT', mode='before')
    @classmethod
    def validate_environment(cls, v):
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator('LOG_LEVEL', mode='before')
    @classmethod
    def validate_log_level(cls, v):
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @field_validator('BYBIT_PROXY_URL', 'BYBIT_MAINNET_URL', 'BYBIT_TESTNET_URL', 'BYBIT_DEMO_URL')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip('/')

    @field_validator('SMS_MAX_ATTEMPTS', 'BYBIT_MAX_CONCURRENT')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError('Value must be at least 1')
        return v


    # ============================================================================
    # COMPUTED PROPERTIES
    # ============================================================================

    @property
    def is_production(self) -> bool:
        """Проверка продакшн окружения"""
        return self.ENVIRONMENT == Environment.PRODUCTION

    @property
    def database_async_url(self) -> str:
        """Async URL для базы данных"""
        if self.DATABASE_URL.startswith('sqlite:///'):
            return self.DATABASE_URL.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return self.DATABASE_URL


    # ============================================================================
    # METHODS
    # ============================================================================

    def get_bybit_base_url(self, environment: str) -> str:
        """Base URL Bybit по окружению из bot_settings"""
        if environment == 'demo':
            return self.BYBIT_DEMO_URL
        if environment == 'testnet':
            return self.BYBIT_TESTNET_URL
        return self.BYBIT_MAINNET_URL

    def get_sms_config(self) -> Dict[str, Any]:
        """Конфигурация для SMS сервиса"""
        return {
            'api_url': self.TWILIO_API_URL,
            'timeout': self.SMS_TIMEOUT,
            'max_attempts': self.SMS_MAX_ATTEMPTS,
            'base_delay_ms': self.SMS_BASE_DELAY_MS,
            'max_delay_ms': self.SMS_MAX_DELAY_MS,
            'max_length': self.SMS_MAX_LENGTH,
        }

    def log_startup_config(self, logger: logging.Logger):
        """Безопасное логирование конфигурации при старте"""
        safe_config = {
            'APP_NAME': self.APP_NAME,
            'VERSION': self.VERSION,
            'ENVIRONMENT': self.ENVIRONMENT.value,
            'HOST': self.HOST,
            'PORT': self.PORT,
            'BYBIT_PROXY_URL': 'set' if self.BYBIT_PROXY_URL else 'not set',
            'BYBIT_MAX_CONCURRENT': self.BYBIT_MAX_CONCURRENT,
            'SMS_MAX_ATTEMPTS': self.SMS_MAX_ATTEMPTS,
            'LOG_LEVEL': self.LOG_LEVEL.value,
            'DATABASE_URL': self.DATABASE_URL.split('://', 1)[0] + '://***',  # Hide credentials
        }

        logger.info("🚀 Trading Bot Configuration:")
        for key, value in safe_config.items():
            logger.info(f"  {key}: {value}")


    # ============================================================================
    # PYDANTIC CONFIG
    # ============================================================================

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        validate_assignment=True,
        extra='ignore',
    )


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Создание единственного экземпляра настроек с кешированием
    """
    return Settings()
