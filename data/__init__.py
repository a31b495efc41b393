"""
Trading Bot Data Module
Инициализация модуля данных и экспорт основных классов
"""

from .database import Database, get_database, init_database, DatabaseStats, HealthCheckResult
from .models import (
    Base, Alert, BotSettings, BotPosition, BotAction, PositionHistory, BotLog,
    SymbolLock, DiagnosticFailure, TpslRetryAttempt,
    ExecutionStatus, PositionStatus, LogLevel
)

# Версия модуля
__version__ = "1.0.0"

# Список экспортируемых классов
__all__ = [
    # Database
    "Database",
    "get_database",
    "init_database",
    "DatabaseStats",
    "HealthCheckResult",

    # Models
    "Base",
    "Alert",
    "BotSettings",
    "BotPosition",
    "BotAction",
    "PositionHistory",
    "BotLog",
    "SymbolLock",
    "DiagnosticFailure",
    "TpslRetryAttempt",

    # Enums
    "ExecutionStatus",
    "PositionStatus",
    "LogLevel",
]
