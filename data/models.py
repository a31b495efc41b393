"""
Trading Bot Database Models
SQLAlchemy ORM модели: алерты, позиции, история, настройки бота, логи и диагностика
"""

import json
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, List

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Text, ForeignKey, Index
)
from sqlalchemy.orm import declarative_base, validates

from utils.helpers import snake_to_camel, utc_iso


# ============================================================================
# BASE CONFIGURATION
# ============================================================================

Base = declarative_base()


def utc_now() -> str:
    """Текущее время в UTC (ISO строка, как хранится в БД)"""
    return utc_iso(datetime.now(timezone.utc))


class SerializableMixin:
    """Сериализация строки таблицы в camelCase словарь для JSON ответов"""

    def to_dict(self) -> Dict[str, Any]:
        return {
            snake_to_camel(column.key): getattr(self, column.key)
            for column in self.__table__.columns
        }


# ============================================================================
# ENUMS
# ============================================================================

class ExecutionStatus(str, PyEnum):
    """Статусы исполнения алерта"""
    PENDING = "pending"
    EXECUTED = "executed"
    REJECTED = "rejected"
    ERROR_REJECTED = "error_rejected"


class PositionStatus(str, PyEnum):
    """Статусы позиции бота"""
    OPEN = "open"
    PARTIAL_CLOSE = "partial_close"
    CLOSED = "closed"


class LogLevel(str, PyEnum):
    """Уровни записей bot_logs"""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


# ============================================================================
# АЛЕРТЫ TRADINGVIEW
# ============================================================================

class Alert(SerializableMixin, Base):
    """
    Входящий алерт TradingView
    """
    __tablename__ = 'alerts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(Integer, nullable=False)  # unix секунды из алерта
    symbol = Column(String(50), nullable=False)
    side = Column(String(10), nullable=False)
    tier = Column(String(20), nullable=False)
    tier_numeric = Column(Integer, nullable=False)
    strength = Column(Float, nullable=False)

    # Уровни
    entry_price = Column(Float, nullable=False)
    sl = Column(Float, nullable=False)
    tp1 = Column(Float, nullable=False)
    tp2 = Column(Float, nullable=False)
    tp3 = Column(Float, nullable=False)
    main_tp = Column(Float, nullable=False)

    # Контекст рынка
    atr = Column(Float, nullable=False)
    volume_ratio = Column(Float, nullable=False)
    session = Column(String(50), nullable=False)
    regime = Column(String(50), nullable=False)
    regime_confidence = Column(Float, nullable=False)
    mtf_agreement = Column(Float, nullable=False)
    leverage = Column(Integer, nullable=False)
    in_ob = Column(Boolean, nullable=False)
    in_fvg = Column(Boolean, nullable=False)
    ob_score = Column(Float, nullable=False)
    fvg_score = Column(Float, nullable=False)
    institutional_flow = Column(Float, nullable=True)
    accumulation = Column(Float, nullable=True)
    volume_climax = Column(Boolean, nullable=True)

    # Метаданные
    latency = Column(Integer, nullable=False)
    raw_json = Column(Text, nullable=False)
    execution_status = Column(String(20), nullable=False, default=ExecutionStatus.PENDING.value)
    rejection_reason = Column(String(50), nullable=True)
    error_type = Column(String(30), nullable=True)
    retention_days = Column(Integer, nullable=False, default=30)
    created_at = Column(String(30), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_alerts_symbol_side_tier', 'symbol', 'side', 'tier'),
        Index('idx_alerts_created_at', 'created_at'),
        Index('idx_alerts_execution_status', 'execution_status'),
    )

    def __repr__(self):
        return f"<Alert(id={self.id}, symbol={self.symbol}, side={self.side}, tier={self.tier})>"


# ============================================================================
# НАСТРОЙКИ БОТА
# ============================================================================

class BotSettings(SerializableMixin, Base):
    """
    Настройки бота (одна строка). Редактируются из дашборда.
    """
    __tablename__ = 'bot_settings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    bot_enabled = Column(Boolean, nullable=False, default=False)

    # Размер позиции и плечо
    position_size_mode = Column(String(20), nullable=False, default='percent')
    position_size_percent = Column(Float, nullable=False, default=2.0)
    position_size_fixed = Column(Float, nullable=False, default=100.0)
    leverage_mode = Column(String(20), nullable=False, default='from_alert')
    leverage_fixed = Column(Integer, nullable=False, default=10)

    # Фильтрация
    tier_filtering_mode = Column(String(20), nullable=False, default='all')
    disabled_tiers = Column(Text, nullable=False, default='[]')
    tp_strategy = Column(String(20), nullable=False, default='multiple')
    max_concurrent_positions = Column(Integer, nullable=False, default=10)

    # Конфликты позиций
    same_symbol_behavior = Column(String(30), nullable=False, default='track_confirmations')
    opposite_direction_strategy = Column(String(30), nullable=False, default='market_reversal')
    reversal_wait_bars = Column(Integer, nullable=False, default=1)
    reversal_min_strength = Column(Float, nullable=False, default=0.25)
    emergency_can_reverse = Column(Boolean, nullable=False, default=True)
    emergency_override_mode = Column(String(30), nullable=False, default='only_profit')
    emergency_min_profit_percent = Column(Float, nullable=False, default=0.0)

    # SL/TP по умолчанию
    use_default_sl_tp = Column(Boolean, nullable=False, default=False)
    default_sl_percent = Column(Float, nullable=False, default=2.0)
    default_tp1_percent = Column(Float, nullable=False, default=2.0)
    default_tp2_percent = Column(Float, nullable=False, default=4.0)
    default_tp3_percent = Column(Float, nullable=False, default=6.0)
    default_sl_rr = Column(Float, nullable=False, default=1.0)
    default_tp1_rr = Column(Float, nullable=False, default=1.0)
    default_tp2_rr = Column(Float, nullable=False, default=2.0)
    default_tp3_rr = Column(Float, nullable=False, default=3.0)

    # Биржа
    api_key = Column(String(200), nullable=True)
    api_secret = Column(String(200), nullable=True)
    exchange = Column(String(20), nullable=False, default='bybit')
    environment = Column(String(20), nullable=False, default='mainnet')
    migration_date = Column(String(80), nullable=True)

    # SMS алерты
    sms_alerts_enabled = Column(Boolean, nullable=False, default=False)
    twilio_account_sid = Column(String(100), nullable=True)
    twilio_auth_token = Column(String(100), nullable=True)
    twilio_phone_number = Column(String(30), nullable=True)
    alert_phone_number = Column(String(30), nullable=True)

    created_at = Column(String(30), nullable=False, default=utc_now)
    updated_at = Column(String(30), nullable=False, default=utc_now)

    @property
    def disabled_tiers_list(self) -> List[str]:
        try:
            tiers = json.loads(self.disabled_tiers or '[]')
        except (TypeError, ValueError):
            return []
        return tiers if isinstance(tiers, list) else []

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['disabledTiers'] = self.disabled_tiers_list
        return data

    def __repr__(self):
        return f"<BotSettings(id={self.id}, enabled={self.bot_enabled}, env={self.environment})>"


# ============================================================================
# ПОЗИЦИИ
# ============================================================================

class BotPosition(SerializableMixin, Base):
    """
    Позиция, открытая ботом
    """
    __tablename__ = 'bot_positions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(Integer, ForeignKey('alerts.id', ondelete='SET NULL'), nullable=True)
    symbol = Column(String(50), nullable=False)
    side = Column(String(10), nullable=False)
    tier = Column(String(20), nullable=False)

    entry_price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=False)
    leverage = Column(Integer, nullable=False)
    stop_loss = Column(Float, nullable=False)
    tp1_price = Column(Float, nullable=True)
    tp2_price = Column(Float, nullable=True)
    tp3_price = Column(Float, nullable=True)
    main_tp_price = Column(Float, nullable=False)
    tp1_hit = Column(Boolean, nullable=False, default=False)
    tp2_hit = Column(Boolean, nullable=False, default=False)
    tp3_hit = Column(Boolean, nullable=False, default=False)
    current_sl = Column(Float, nullable=False)

    position_value = Column(Float, nullable=False)
    initial_margin = Column(Float, nullable=False)
    unrealised_pnl = Column(Float, nullable=False, default=0.0)
    confirmation_count = Column(Integer, nullable=False, default=1)
    confidence_score = Column(Float, nullable=False)

    opened_at = Column(String(30), nullable=False, default=utc_now)
    last_updated = Column(String(30), nullable=False, default=utc_now)
    bybit_order_id = Column(String(100), nullable=True)
    tp2_order_id = Column(String(100), nullable=True)
    tp3_order_id = Column(String(100), nullable=True)
    closed_at = Column(String(30), nullable=True)
    close_reason = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=PositionStatus.OPEN.value)
    alert_data = Column(Text, nullable=True)
    received_at = Column(String(30), nullable=True)

    __table_args__ = (
        Index('idx_bot_positions_symbol_status', 'symbol', 'status'),
        Index('idx_bot_positions_opened_at', 'opened_at'),
    )

    @validates('side')
    def validate_side(self, key, side):
        return side.upper() if side else side

    def __repr__(self):
        return f"<BotPosition(id={self.id}, {self.symbol} {self.side} x{self.leverage}, status={self.status})>"


class BotAction(SerializableMixin, Base):
    """
    Действия бота (открытие/закрытие/ошибки)
    """
    __tablename__ = 'bot_actions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    action_type = Column(String(50), nullable=False)
    symbol = Column(String(50), nullable=True)
    side = Column(String(10), nullable=True)
    tier = Column(String(20), nullable=True)
    alert_id = Column(Integer, ForeignKey('alerts.id', ondelete='SET NULL'), nullable=True)
    position_id = Column(Integer, ForeignKey('bot_positions.id', ondelete='SET NULL'), nullable=True)
    reason = Column(String(100), nullable=False)
    details = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(String(30), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_bot_actions_created_at', 'created_at'),
    )

    def __repr__(self):
        return f"<BotAction(id={self.id}, type={self.action_type}, success={self.success})>"


class PositionHistory(SerializableMixin, Base):
    """
    Закрытые позиции (история + импорт с Bybit)
    """
    __tablename__ = 'position_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(Integer, ForeignKey('bot_positions.id', ondelete='SET NULL'), nullable=True)
    alert_id = Column(Integer, ForeignKey('alerts.id', ondelete='SET NULL'), nullable=True)
    symbol = Column(String(50), nullable=False)
    side = Column(String(10), nullable=False)
    tier = Column(String(20), nullable=False)

    entry_price = Column(Float, nullable=False)
    close_price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=False)
    leverage = Column(Integer, nullable=False)

    pnl = Column(Float, nullable=False)
    gross_pnl = Column(Float, nullable=True)
    trading_fees = Column(Float, nullable=True)
    funding_fees = Column(Float, nullable=True)
    total_fees = Column(Float, nullable=True)
    pnl_percent = Column(Float, nullable=False)

    close_reason = Column(String(50), nullable=False)
    tp1_hit = Column(Boolean, nullable=False, default=False)
    tp2_hit = Column(Boolean, nullable=False, default=False)
    tp3_hit = Column(Boolean, nullable=False, default=False)
    partial_close_count = Column(Integer, nullable=True)
    confirmation_count = Column(Integer, nullable=False, default=1)

    opened_at = Column(String(30), nullable=False)
    closed_at = Column(String(30), nullable=False)
    duration_minutes = Column(Integer, nullable=True)
    alert_data = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_position_history_closed_at', 'closed_at'),
        Index('idx_position_history_symbol_side', 'symbol', 'side'),
    )

    @property
    def is_profitable(self) -> bool:
        return self.pnl > 0

    def __repr__(self):
        return f"<PositionHistory(id={self.id}, {self.symbol} {self.side}, pnl={self.pnl})>"


# ============================================================================
# ЛОГИ И ДИАГНОСТИКА
# ============================================================================

class BotLog(SerializableMixin, Base):
    """
    Журнал событий бота для дашборда
    """
    __tablename__ = 'bot_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(Integer, nullable=False)
    level = Column(String(20), nullable=False)  # error, warning, info, success
    action = Column(String(100), nullable=False)  # webhook_received, position_opened, ...
    message = Column(Text, nullable=False)
    details = Column(Text, nullable=True)  # JSON строка
    alert_id = Column(Integer, ForeignKey('alerts.id', ondelete='SET NULL'), nullable=True)
    position_id = Column(Integer, ForeignKey('bot_positions.id', ondelete='SET NULL'), nullable=True)
    created_at = Column(Integer, nullable=False)

    __table_args__ = (
        Index('idx_bot_logs_timestamp', 'timestamp'),
        Index('idx_bot_logs_level_action', 'level', 'action'),
    )

    def __repr__(self):
        return f"<BotLog(id={self.id}, level={self.level}, action={self.action})>"


class SymbolLock(SerializableMixin, Base):
    """
    Блокировка символа после ошибок торговли
    """
    __tablename__ = 'symbol_locks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(50), nullable=False)
    lock_reason = Column(String(50), nullable=False)
    locked_at = Column(String(30), nullable=False, default=utc_now)
    failure_count = Column(Integer, nullable=False)
    last_error = Column(Text, nullable=True)
    unlocked_at = Column(String(30), nullable=True)
    is_permanent = Column(Boolean, nullable=False, default=False)
    created_at = Column(String(30), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_symbol_locks_symbol', 'symbol'),
    )

    @property
    def is_active(self) -> bool:
        return self.unlocked_at is None

    def __repr__(self):
        return f"<SymbolLock(symbol={self.symbol}, reason={self.lock_reason}, active={self.is_active})>"


class DiagnosticFailure(SerializableMixin, Base):
    """
    Сбои, требующие внимания (emergency close, SL/TP не выставлены)
    """
    __tablename__ = 'diagnostic_failures'

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(Integer, ForeignKey('bot_positions.id', ondelete='SET NULL'), nullable=True)
    failure_type = Column(String(50), nullable=False)
    reason = Column(Text, nullable=False)
    attempt_count = Column(Integer, nullable=False)
    error_details = Column(Text, nullable=True)
    created_at = Column(String(30), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_diagnostic_failures_position', 'position_id'),
    )

    def __repr__(self):
        return f"<DiagnosticFailure(id={self.id}, type={self.failure_type})>"


class TpslRetryAttempt(SerializableMixin, Base):
    """
    Попытки выставить SL/TP на бирже
    """
    __tablename__ = 'tpsl_retry_attempts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(Integer, ForeignKey('bot_positions.id', ondelete='CASCADE'), nullable=False)
    attempt_number = Column(Integer, nullable=False)
    order_type = Column(String(20), nullable=False)
    trigger_price = Column(Float, nullable=False)
    success = Column(Boolean, nullable=False)
    error_code = Column(String(30), nullable=True)
    error_message = Column(Text, nullable=True)
    error_type = Column(String(30), nullable=True)
    created_at = Column(String(30), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_tpsl_retry_position', 'position_id'),
    )

    def __repr__(self):
        return f"<TpslRetryAttempt(position={self.position_id}, #{self.attempt_number}, ok={self.success})>"


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def get_table_names() -> List[str]:
    """Получение списка всех таблиц"""
    return list(Base.metadata.tables.keys())
