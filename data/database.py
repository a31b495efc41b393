"""
Trading Bot Database Connection and Operations
Управление подключением к SQLite базе данных с async поддержкой
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, text, inspect, select, func, delete, update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
import aiosqlite

# Внутренние импорты
from data.models import (
    Base, Alert, BotSettings, BotPosition, BotAction, BotLog,
    PositionHistory, SymbolLock, PositionStatus, utc_now
)
from app.config.settings import Settings, get_settings
from utils.helpers import get_current_timestamp_seconds, safe_json_dumps, days_ago_iso, parse_iso_datetime
from utils.logger import setup_logger


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

DEFAULT_DATABASE_URL = "sqlite:///trading_bot.db"

# SQLite pragma настройки для оптимизации
SQLITE_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL",        # Write-Ahead Logging
    "PRAGMA synchronous=NORMAL",
    "PRAGMA cache_size=10000",
    "PRAGMA temp_store=memory",
    "PRAGMA mmap_size=134217728",     # 128MB
    "PRAGMA optimize",
]

REQUIRED_TABLES = ['alerts', 'bot_settings', 'bot_positions', 'position_history', 'bot_logs']

OPEN_POSITION_STATUSES = (PositionStatus.OPEN.value, PositionStatus.PARTIAL_CLOSE.value)


# ============================================================================
# DATACLASSES ДЛЯ РЕЗУЛЬТАТОВ
# ============================================================================

@dataclass
class DatabaseStats:
    """Статистика базы данных"""
    total_alerts: int
    open_positions: int
    closed_positions: int
    total_logs: int
    database_size_mb: float
    last_alert_time: Optional[str]


@dataclass
class HealthCheckResult:
    """Результат проверки здоровья БД"""
    is_healthy: bool
    connection_ok: bool
    tables_exist: bool
    recent_activity: bool
    error_message: Optional[str] = None


# ============================================================================
# ОСНОВНОЙ КЛАСС БД
# ============================================================================

class Database:
    """
    Главный класс для работы с базой данных
    Поддерживает как sync, так и async операции
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.Database")

        # Database URLs
        self.database_url = self.settings.DATABASE_URL
        self.async_database_url = self.settings.database_async_url

        # Engines
        self.engine = None
        self.async_engine = None

        # Session makers
        self.session_factory = None
        self.async_session_factory = None

        # Connection status
        self._initialized = False
        self._connected = False

        # Stats cache
        self._stats_cache = None
        self._stats_cache_time = None
        self._cache_ttl = timedelta(minutes=5)

    @property
    def database_path(self) -> str:
        return self.database_url.replace("sqlite:///", "")

    async def init(self) -> None:
        """
        Инициализация базы данных
        """
        if self._initialized:
            return

        try:
            self.logger.info("🗄️ Initializing database connection...")

            # Создаем папку для БД если нужно
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)

            self.engine = create_engine(
                self.database_url,
                echo=self.settings.DATABASE_ECHO,
                poolclass=StaticPool,
                connect_args={
                    "check_same_thread": False,
                    "timeout": self.settings.DATABASE_POOL_TIMEOUT,
                },
                pool_pre_ping=True,
                pool_recycle=self.settings.DATABASE_POOL_RECYCLE,
            )

            self.async_engine = create_async_engine(
                self.async_database_url,
                echo=self.settings.DATABASE_ECHO,
                poolclass=StaticPool,
                connect_args={
                    "check_same_thread": False,
                },
                pool_pre_ping=True,
            )

            self.session_factory = sessionmaker(
                bind=self.engine,
                class_=Session,
                expire_on_commit=False
            )

            self.async_session_factory = async_sessionmaker(
                bind=self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            await self._create_tables()
            await self._optimize_sqlite()
            await self._check_connection()

            self._initialized = True
            self._connected = True

            self.logger.info("✅ Database initialized successfully")

        except Exception as e:
            self.logger.error(f"❌ Failed to initialize database: {e}")
            raise

    async def close(self) -> None:
        """
        Закрытие подключения к БД
        """
        self.logger.info("🔒 Closing database connections...")

        if self.async_engine:
            await self.async_engine.dispose()

        if self.engine:
            self.engine.dispose()

        self._connected = False
        self._initialized = False
        self.logger.info("✅ Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """
        Async context manager для получения сессии БД
        """
        if not self._initialized:
            await self.init()

        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                self.logger.error(f"❌ Database session error: {e}")
                raise
            finally:
                await session.close()

    def get_sync_session(self) -> Session:
        """
        Получение синхронной сессии БД
        """
        if self.session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        return self.session_factory()

    # ============================================================================
    # ПРИВАТНЫЕ МЕТОДЫ ИНИЦИАЛИЗАЦИИ
    # ============================================================================

    async def _create_tables(self) -> None:
        """Создание всех таблиц"""
        try:
            Base.metadata.create_all(bind=self.engine)

            inspector = inspect(self.engine)
            table_names = inspector.get_table_names()

            self.logger.info(f"📊 Database tables: {', '.join(table_names)}")

        except Exception as e:
            self.logger.error(f"❌ Failed to create tables: {e}")
            raise

    async def _optimize_sqlite(self) -> None:
        """Оптимизация SQLite настроек"""
        try:
            async with aiosqlite.connect(self.database_path) as conn:
                for pragma in SQLITE_PRAGMA_SETTINGS:
                    await conn.execute(pragma)
                await conn.commit()

            self.logger.debug("🔧 SQLite optimizations applied")

        except Exception as e:
            self.logger.warning(f"⚠️ Failed to apply SQLite optimizations: {e}")

    async def _check_connection(self) -> None:
        """Проверка подключения к БД"""
        try:
            async with self.async_session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.fetchone()

            self.logger.debug("✅ Database connection verified")

        except Exception as e:
            self.logger.error(f"❌ Database connection check failed: {e}")
            raise

    # ============================================================================
    # НАСТРОЙКИ БОТА
    # ============================================================================

    async def get_bot_settings(self) -> Optional[BotSettings]:
        """Единственная строка настроек бота (или None)"""
        async with self.get_session() as session:
            result = await session.execute(select(BotSettings).order_by(BotSettings.id).limit(1))
            return result.scalar_one_or_none()

    async def ensure_bot_settings(self) -> BotSettings:
        """
        Получение настроек, при отсутствии создается строка по умолчанию
        """
        async with self.get_session() as session:
            result = await session.execute(select(BotSettings).order_by(BotSettings.id).limit(1))
            bot_settings = result.scalar_one_or_none()

            if bot_settings is None:
                bot_settings = BotSettings()
                session.add(bot_settings)
                await session.flush()
                self.logger.info(f"⚙️ Default bot settings created (id: {bot_settings.id})")

            return bot_settings

    async def update_bot_settings(self, values: Dict[str, Any]) -> Optional[BotSettings]:
        """
        Обновление настроек бота, ключи в snake_case.
        Возвращает None если настроек нет.
        """
        async with self.get_session() as session:
            result = await session.execute(select(BotSettings).order_by(BotSettings.id).limit(1))
            bot_settings = result.scalar_one_or_none()
            if bot_settings is None:
                return None

            for key, value in values.items():
                if hasattr(BotSettings, key) and key not in ('id', 'created_at'):
                    setattr(bot_settings, key, value)
            bot_settings.updated_at = utc_now()

            self.logger.debug(f"⚙️ Bot settings updated: {', '.join(values.keys())}")
            return bot_settings

    # ============================================================================
    # АЛЕРТЫ
    # ============================================================================

    async def create_alert(self, values: Dict[str, Any]) -> Alert:
        """
        Сохранение алерта TradingView
        """
        async with self.get_session() as session:
            alert = Alert(**values)
            session.add(alert)
            await session.flush()

            self.logger.debug(
                f"💾 Alert saved: {alert.symbol} {alert.side} {alert.tier} (id: {alert.id})"
            )
            return alert

    async def update_alert(self, alert_id: int, **values) -> None:
        async with self.get_session() as session:
            alert = await session.get(Alert, alert_id)
            if alert is None:
                self.logger.warning(f"⚠️ Alert {alert_id} not found for update")
                return
            for key, value in values.items():
                setattr(alert, key, value)

    async def find_recent_alerts(self, symbol: str, side: str, tier: str, limit: int = 10) -> List[Alert]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Alert)
                .where(Alert.symbol == symbol, Alert.side == side, Alert.tier == tier)
                .order_by(Alert.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ============================================================================
    # ПОЗИЦИИ
    # ============================================================================

    async def get_open_positions(self, symbol: Optional[str] = None) -> List[BotPosition]:
        """Открытые позиции бота (open и partial_close)"""
        async with self.get_session() as session:
            query = select(BotPosition).where(BotPosition.status.in_(OPEN_POSITION_STATUSES))
            if symbol:
                query = query.where(BotPosition.symbol == symbol)
            result = await session.execute(query.order_by(BotPosition.opened_at.desc()))
            return list(result.scalars().all())

    async def count_open_positions(self) -> int:
        async with self.get_session() as session:
            count = await session.scalar(
                select(func.count(BotPosition.id)).where(BotPosition.status.in_(OPEN_POSITION_STATUSES))
            )
            return count or 0

    async def create_position(self, values: Dict[str, Any]) -> BotPosition:
        async with self.get_session() as session:
            position = BotPosition(**values)
            session.add(position)
            await session.flush()

            self.logger.info(
                f"💾 Position saved: {position.symbol} {position.side} x{position.leverage} (id: {position.id})"
            )
            return position

    async def update_position(self, position_id: int, **values) -> Optional[BotPosition]:
        async with self.get_session() as session:
            position = await session.get(BotPosition, position_id)
            if position is None:
                self.logger.warning(f"⚠️ Position {position_id} not found for update")
                return None
            for key, value in values.items():
                setattr(position, key, value)
            position.last_updated = utc_now()
            return position

    async def close_position_record(
        self,
        position: BotPosition,
        close_reason: str,
        close_price: Optional[float] = None,
        pnl: float = 0.0
    ) -> PositionHistory:
        """
        Закрытие позиции в БД и запись в историю
        """
        closed_at = utc_now()
        close_price = close_price if close_price is not None else position.entry_price
        margin = position.initial_margin or 0.0

        async with self.get_session() as session:
            db_position = await session.get(BotPosition, position.id)
            if db_position is not None:
                db_position.status = PositionStatus.CLOSED.value
                db_position.closed_at = closed_at
                db_position.close_reason = close_reason
                db_position.last_updated = closed_at

            opened = datetime.fromisoformat(position.opened_at.replace('Z', '+00:00'))
            closed = datetime.fromisoformat(closed_at.replace('Z', '+00:00'))

            history = PositionHistory(
                position_id=position.id,
                alert_id=position.alert_id,
                symbol=position.symbol,
                side=position.side,
                tier=position.tier,
                entry_price=position.entry_price,
                close_price=close_price,
                quantity=position.quantity,
                leverage=position.leverage,
                pnl=pnl,
                pnl_percent=(pnl / margin * 100) if margin else 0.0,
                close_reason=close_reason,
                tp1_hit=position.tp1_hit,
                tp2_hit=position.tp2_hit,
                tp3_hit=position.tp3_hit,
                confirmation_count=position.confirmation_count,
                opened_at=position.opened_at,
                closed_at=closed_at,
                duration_minutes=round((closed - opened).total_seconds() / 60),
                alert_data=position.alert_data,
            )
            session.add(history)
            await session.flush()

            self.logger.info(f"📕 Position {position.id} closed in DB ({close_reason})")
            return history

    # ============================================================================
    # ЛОГИ И ДЕЙСТВИЯ БОТА
    # ============================================================================

    async def add_bot_log(
        self,
        level: str,
        action: str,
        message: str,
        details: Optional[Any] = None,
        alert_id: Optional[int] = None,
        position_id: Optional[int] = None
    ) -> int:
        """
        Запись в журнал бота (timestamp и createdAt в секундах)
        """
        now_s = get_current_timestamp_seconds()
        if details is not None and not isinstance(details, str):
            details = safe_json_dumps(details)

        async with self.get_session() as session:
            log = BotLog(
                timestamp=now_s,
                level=level,
                action=action,
                message=message,
                details=details,
                alert_id=alert_id,
                position_id=position_id,
                created_at=now_s,
            )
            session.add(log)
            await session.flush()
            return log.id

    async def add_bot_action(
        self,
        action_type: str,
        reason: str,
        success: bool,
        symbol: Optional[str] = None,
        side: Optional[str] = None,
        tier: Optional[str] = None,
        alert_id: Optional[int] = None,
        position_id: Optional[int] = None,
        details: Optional[Any] = None,
        error_message: Optional[str] = None
    ) -> int:
        if details is not None and not isinstance(details, str):
            details = safe_json_dumps(details)

        async with self.get_session() as session:
            action = BotAction(
                action_type=action_type,
                symbol=symbol,
                side=side,
                tier=tier,
                alert_id=alert_id,
                position_id=position_id,
                reason=reason,
                details=details,
                success=success,
                error_message=error_message,
            )
            session.add(action)
            await session.flush()
            return action.id

    # ============================================================================
    # БЛОКИРОВКИ СИМВОЛОВ
    # ============================================================================

    async def get_active_symbol_lock(self, symbol: str) -> Optional[SymbolLock]:
        async with self.get_session() as session:
            result = await session.execute(
                select(SymbolLock)
                .where(SymbolLock.symbol == symbol, SymbolLock.unlocked_at.is_(None))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def lock_symbol(self, symbol: str, reason: str, last_error: str, permanent: bool = False) -> SymbolLock:
        """
        Блокировка символа. Повторная блокировка увеличивает failureCount.
        """
        async with self.get_session() as session:
            result = await session.execute(
                select(SymbolLock)
                .where(SymbolLock.symbol == symbol, SymbolLock.unlocked_at.is_(None))
                .limit(1)
            )
            lock = result.scalar_one_or_none()

            if lock is None:
                lock = SymbolLock(
                    symbol=symbol,
                    lock_reason=reason,
                    failure_count=1,
                    last_error=last_error,
                    is_permanent=permanent,
                )
                session.add(lock)
            else:
                lock.failure_count += 1
                lock.last_error = last_error
                lock.is_permanent = lock.is_permanent or permanent

            await session.flush()
            self.logger.warning(f"🔒 Symbol locked: {symbol} ({reason}, failures: {lock.failure_count})")
            return lock

    # ============================================================================
    # СТАТИСТИКА И ОБСЛУЖИВАНИЕ
    # ============================================================================

    async def get_database_stats(self) -> DatabaseStats:
        """
        Получение статистики БД с кешированием
        """
        if (
            self._stats_cache is not None
            and self._stats_cache_time is not None
            and datetime.now() - self._stats_cache_time < self._cache_ttl
        ):
            return self._stats_cache

        try:
            async with self.get_session() as session:
                total_alerts = await session.scalar(select(func.count(Alert.id)))
                open_positions = await session.scalar(
                    select(func.count(BotPosition.id)).where(BotPosition.status.in_(OPEN_POSITION_STATUSES))
                )
                closed_positions = await session.scalar(select(func.count(PositionHistory.id)))
                total_logs = await session.scalar(select(func.count(BotLog.id)))
                last_alert_time = await session.scalar(select(func.max(Alert.created_at)))

            db_file = Path(self.database_path)
            database_size_mb = db_file.stat().st_size / 1024 / 1024 if db_file.exists() else 0.0

            stats = DatabaseStats(
                total_alerts=total_alerts or 0,
                open_positions=open_positions or 0,
                closed_positions=closed_positions or 0,
                total_logs=total_logs or 0,
                database_size_mb=round(database_size_mb, 2),
                last_alert_time=last_alert_time,
            )

            self._stats_cache = stats
            self._stats_cache_time = datetime.now()

            self.logger.debug("📊 Database stats retrieved and cached")
            return stats

        except Exception as e:
            self.logger.error(f"❌ Failed to get database stats: {e}")
            return DatabaseStats(0, 0, 0, 0, 0.0, None)

    async def health_check(self) -> HealthCheckResult:
        """
        Проверка здоровья базы данных
        """
        connection_ok = False
        tables_exist = False
        recent_activity = False

        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
            connection_ok = True
        except Exception as e:
            self.logger.error(f"❌ Database connection failed: {e}")
            return HealthCheckResult(
                is_healthy=False,
                connection_ok=False,
                tables_exist=False,
                recent_activity=False,
                error_message=str(e)
            )

        try:
            table_names = inspect(self.engine).get_table_names()
            tables_exist = all(table in table_names for table in REQUIRED_TABLES)
        except Exception as e:
            self.logger.error(f"❌ Table check failed: {e}")

        if tables_exist:
            async with self.get_session() as session:
                recent_alerts = await session.scalar(
                    select(func.count(Alert.id)).where(Alert.created_at > days_ago_iso(1 / 24))
                )
                recent_activity = (recent_alerts or 0) > 0

        is_healthy = connection_ok and tables_exist
        if is_healthy:
            self.logger.debug("✅ Database health check passed")
        else:
            self.logger.warning("⚠️ Database health check failed")

        return HealthCheckResult(
            is_healthy=is_healthy,
            connection_ok=connection_ok,
            tables_exist=tables_exist,
            recent_activity=recent_activity
        )

    # ============================================================================
    # ОЧИСТКА АЛЕРТОВ
    # ============================================================================

    async def get_expired_alerts(self) -> List[Alert]:
        """
        Алерты, у которых истек срок хранения (createdAt + retentionDays < now)
        """
        now = datetime.now(timezone.utc)
        async with self.get_session() as session:
            alerts = (await session.execute(
                select(Alert).order_by(Alert.created_at.asc())
            )).scalars().all()

        expired = []
        for alert in alerts:
            created_at = parse_iso_datetime(alert.created_at)
            if created_at is None:
                continue
            if created_at + timedelta(days=alert.retention_days or 0) < now:
                expired.append(alert)
        return expired

    async def delete_alerts_by_ids(self, alert_ids: List[int], batch_size: Optional[int] = None) -> int:
        """
        Удаление алертов пачками
        """
        batch_size = batch_size or self.settings.CLEANUP_BATCH_SIZE
        total_deleted = 0

        for start in range(0, len(alert_ids), batch_size):
            batch = alert_ids[start:start + batch_size]
            async with self.get_session() as session:
                result = await session.execute(delete(Alert).where(Alert.id.in_(batch)))
                total_deleted += result.rowcount or 0
            self.logger.debug(f"🧹 Deleted batch of {len(batch)} alerts")

        if total_deleted:
            self.logger.info(f"🧹 Alerts cleanup completed: {total_deleted} records deleted")
        return total_deleted

    async def delete_alerts_created_before(self, created_before: str) -> int:
        """Удаление алертов, созданных раньше created_before (ISO UTC)"""
        async with self.get_session() as session:
            result = await session.execute(delete(Alert).where(Alert.created_at < created_before))
            deleted = result.rowcount or 0

        self.logger.info(f"🧹 Deleted {deleted} alerts created before {created_before}")
        return deleted

    async def delete_all_alerts_but_last(self) -> int:
        """
        Оставляет только последний алерт (максимальный id).
        Связанные логи, действия и позиции старых алертов удаляются вместе с ними.
        """
        async with self.get_session() as session:
            max_id = await session.scalar(select(func.max(Alert.id)))
            if max_id is None:
                return 0

            deleted = await session.scalar(select(func.count(Alert.id)).where(Alert.id < max_id)) or 0
            for model in (BotLog, BotAction, BotPosition):
                await session.execute(delete(model).where(model.alert_id < max_id))
            await session.execute(delete(Alert).where(Alert.id < max_id))

        self.logger.info(f"🧹 Deleted {deleted} alerts, kept alert {max_id}")
        return deleted

    async def unlock_symbol(self, symbol: str) -> int:
        """Снятие активных блокировок символа, возвращает число снятых"""
        async with self.get_session() as session:
            result = await session.execute(
                update(SymbolLock)
                .where(SymbolLock.symbol == symbol, SymbolLock.unlocked_at.is_(None))
                .values(unlocked_at=utc_now())
            )
            count = result.rowcount or 0

        self.logger.info(f"🔓 Symbol unlocked: {symbol} ({count} locks)")
        return count

    async def mark_positions_closed(self, symbol: str, side: str, close_reason: str) -> int:
        """Закрытие открытых позиций символа/стороны в БД (после закрытия на бирже)"""
        closed_at = utc_now()
        async with self.get_session() as session:
            result = await session.execute(
                update(BotPosition)
                .where(
                    BotPosition.symbol == symbol,
                    func.upper(BotPosition.side) == side.upper(),
                    BotPosition.status.in_(OPEN_POSITION_STATUSES),
                )
                .values(
                    status=PositionStatus.CLOSED.value,
                    close_reason=close_reason,
                    closed_at=closed_at,
                    last_updated=closed_at,
                )
            )
            return result.rowcount or 0

    # ============================================================================
    # UTILITY МЕТОДЫ
    # ============================================================================

    @property
    def is_connected(self) -> bool:
        """Проверка состояния подключения"""
        return self._connected

    def reset_tables(self) -> None:
        """Пересоздание всех таблиц (используется для чистого состояния)"""
        if self.engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)
        self._stats_cache = None


# ============================================================================
# SINGLETON И CONVENIENCE ФУНКЦИИ
# ============================================================================

_database_instance: Optional[Database] = None


def get_database() -> Database:
    """
    Получение глобального экземпляра базы данных
    """
    global _database_instance
    if _database_instance is None:
        _database_instance = Database()
    return _database_instance


async def init_database(settings: Optional[Settings] = None) -> Database:
    """
    Инициализация базы данных
    """
    db = get_database()
    if settings:
        db.settings = settings
    await db.init()
    return db
