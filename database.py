# database.py
import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional
from urllib.parse import urlparse

import asyncpg

logger = logging.getLogger(__name__)

# Ошибки, при которых хранилище считается недоступным (fail closed)
STORAGE_ERRORS = (
    asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError,
)


class Database:
    """Владелец пула соединений asyncpg. Создаётся явно и передаётся в хранилища."""

    def __init__(self, dsn, min_size=1, max_size=10, command_timeout=60):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.pool = None

    async def connect(self):
        """Подключение к базе данных с правильной обработкой хостов Railway"""
        parsed = urlparse(self.dsn)
        host = parsed.hostname or "неизвестно"
        is_internal = "railway.internal" in host

        logger.info("🔍 Подключение к БД: хост=%s, внутренний=%s", host, is_internal)

        options = dict(
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
        )
        # Для внутренних хостов SSL ломает подключение
        if is_internal:
            options["ssl"] = None

        try:
            self.pool = await asyncpg.create_pool(self.dsn, **options)
        except Exception as e:
            error_msg = str(e).lower()
            if 'name or service not known' in error_msg or 'gaierror' in error_msg:
                raise ConnectionError(
                    "❌ Ошибка: хост базы данных не найден. "
                    "Используйте публичную строку подключения (не *.railway.internal)"
                ) from e
            elif 'network is unreachable' in error_msg:
                raise ConnectionError(
                    "❌ Ошибка сети. Используйте публичный URL базы данных"
                ) from e
            raise ConnectionError(f"❌ Ошибка подключения: {e}") from e

        logger.info("✅ Подключение к БД установлено (max_size=%s)", self.max_size)

    async def close(self):
        """Безопасное закрытие соединения"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("🔌 Соединение с БД закрыто")

    def acquire(self):
        if self.pool is None:
            raise ConnectionError("❌ База данных не подключена")
        return self.pool.acquire()

    async def create_tables(self):
        """Создание таблиц если не существуют"""
        async with self.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    user_id TEXT UNIQUE NOT NULL,
                    username VARCHAR(255),
                    daily_image_count INTEGER NOT NULL DEFAULT 0,
                    last_reset_date DATE NOT NULL DEFAULT CURRENT_DATE,
                    total_generations INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT NOW(),
                    last_active TIMESTAMP DEFAULT NOW(),
                    CHECK (daily_image_count >= 0)
                )
            ''')

            await conn.execute('''
                CREATE TABLE IF NOT EXISTS image_generations (
                    id SERIAL PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    image_url TEXT,
                    created_at TIMESTAMP DEFAULT NOW()
                )
            ''')

            await conn.execute(
                'CREATE INDEX IF NOT EXISTS idx_image_generations_user_id '
                'ON image_generations(user_id)'
            )

            logger.info("✅ Таблицы БД проверены/созданы")


# ===== СЧЁТЧИКИ ЛИМИТОВ =====

@dataclass
class SlotReservation:
    reserved: bool
    count_after: int
    unavailable: bool = False


@dataclass
class UsageSnapshot:
    daily_count: int
    total_generations: int = 0
    last_reset_date: Optional[date] = None


# Сброс устаревшего счётчика выполняется в том же upsert, что и создание записи.
# Upsert блокирует строку до конца транзакции, поэтому конкурентные запросы
# одного пользователя выполняются последовательно.
UPSERT_WITH_RESET_SQL = '''
    INSERT INTO users (user_id, username, daily_image_count, last_reset_date)
    VALUES ($1, $2, 0, CURRENT_DATE)
    ON CONFLICT (user_id) DO UPDATE SET
        username = COALESCE(EXCLUDED.username, users.username),
        last_active = NOW(),
        daily_image_count = CASE
            WHEN users.last_reset_date < CURRENT_DATE THEN 0
            ELSE users.daily_image_count
        END,
        last_reset_date = GREATEST(users.last_reset_date, CURRENT_DATE)
'''

CONDITIONAL_INCREMENT_SQL = '''
    UPDATE users
    SET daily_image_count = daily_image_count + 1
    WHERE user_id = $1 AND daily_image_count < $2
    RETURNING daily_image_count
'''

CURRENT_COUNT_SQL = 'SELECT daily_image_count FROM users WHERE user_id = $1'

RELEASE_SQL = '''
    UPDATE users
    SET daily_image_count = GREATEST(daily_image_count - 1, 0)
    WHERE user_id = $1
        AND last_reset_date = CURRENT_DATE
        AND daily_image_count > 0
    RETURNING daily_image_count
'''

READ_STATS_SQL = '''
    SELECT
        CASE
            WHEN last_reset_date < CURRENT_DATE THEN 0
            ELSE daily_image_count
        END AS daily_count,
        total_generations,
        GREATEST(last_reset_date, CURRENT_DATE) AS last_reset_date
    FROM users
    WHERE user_id = $1
'''


class QuotaStore:
    """Персистентные дневные счётчики пользователей.

    Все изменения счётчика выполняются одним условным UPDATE, без чтения
    и последующей записи в приложении.
    """

    def __init__(self, db: Database):
        self.db = db

    async def ensure_user(self, user_id: str, username: Optional[str]) -> None:
        async with self.db.acquire() as conn:
            await conn.execute(UPSERT_WITH_RESET_SQL, user_id, username)

    async def reserve_slot(self, user_id: str, username: Optional[str], limit: int) -> SlotReservation:
        try:
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(UPSERT_WITH_RESET_SQL, user_id, username)
                    row = await conn.fetchrow(CONDITIONAL_INCREMENT_SQL, user_id, limit)
                    if row is not None:
                        count = row['daily_image_count']
                        logger.info("🎯 Слот зарезервирован: user=%s count=%s/%s", user_id, count, limit)
                        return SlotReservation(reserved=True, count_after=count)

                    current = await conn.fetchval(CURRENT_COUNT_SQL, user_id)
        except STORAGE_ERRORS:
            logger.exception("❌ Хранилище лимитов недоступно, генерация запрещена: user=%s", user_id)
            return SlotReservation(reserved=False, count_after=0, unavailable=True)

        count = current if current is not None else limit
        logger.info("🚫 Лимит исчерпан: user=%s count=%s/%s", user_id, count, limit)
        return SlotReservation(reserved=False, count_after=count)

    async def release_slot(self, user_id: str) -> None:
        try:
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(RELEASE_SQL, user_id)
        except STORAGE_ERRORS:
            logger.exception("❌ Не удалось вернуть слот: user=%s", user_id)
            return

        if row is not None:
            logger.info("↩️ Слот возвращён: user=%s count=%s", user_id, row['daily_image_count'])
        else:
            logger.info("⚠️ Нечего возвращать (счётчик 0 или устарел): user=%s", user_id)

    async def read_stats(self, user_id: str) -> UsageSnapshot:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(READ_STATS_SQL, user_id)
        if row is None:
            return UsageSnapshot(daily_count=0)
        return UsageSnapshot(
            daily_count=row['daily_count'],
            total_generations=row['total_generations'],
            last_reset_date=row['last_reset_date'],
        )

    async def mark_delivered(self, user_id: str) -> None:
        async with self.db.acquire() as conn:
            await conn.execute('''
                UPDATE users SET total_generations = total_generations + 1, last_active = NOW()
                WHERE user_id = $1
            ''', user_id)


# ===== ИСТОРИЯ ГЕНЕРАЦИЙ =====

class HistoryRecorder:
    def __init__(self, db: Database):
        self.db = db

    async def record(self, user_id: str, prompt: str, image_url: str) -> None:
        """Сохранение генерации. Ошибка записи не должна мешать доставке."""
        try:
            async with self.db.acquire() as conn:
                await conn.execute('''
                    INSERT INTO image_generations (user_id, prompt, image_url)
                    VALUES ($1, $2, $3)
                ''', user_id, prompt, image_url)
        except Exception:
            logger.exception("⚠️ Не удалось сохранить историю: user=%s", user_id)

    async def recent(self, user_id: str, limit: int = 10):
        async with self.db.acquire() as conn:
            return await conn.fetch('''
                SELECT id, prompt, image_url, created_at FROM image_generations
                WHERE user_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2
            ''', user_id, limit)

    async def count(self, user_id: str) -> int:
        async with self.db.acquire() as conn:
            return await conn.fetchval(
                'SELECT COUNT(*) FROM image_generations WHERE user_id = $1',
                user_id
            )
