# limits.py
"""
Политика дневных лимитов: выбор потолка по типу чата и безлимит для админов.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from database import STORAGE_ERRORS, UsageSnapshot

logger = logging.getLogger(__name__)

ADMIN_REMAINING = 999
PRIVATE_CHAT = "private"

MSG_ADMIN = "👑 Администратор — безлимитный доступ"
MSG_UNAVAILABLE = "⚠️ Сервис лимитов временно недоступен. Попробуйте позже."
MSG_LIMIT_PRIVATE = (
    "🚫 Ваш лимит на сегодня закончен: {count}/{limit}.\n"
    "🔄 Лимит обновится завтра в 00:00. Приходите завтра!"
)
MSG_LIMIT_GROUP = (
    "🚫 Лимит запросов для этого чата закончился ({count}/{limit}).\n"
    "🔄 Лимиты обновляются каждые сутки в 00:00.\n\n"
    "💬 В личных сообщениях: {private_limit} изображения в день"
)
MSG_GRANTED = "🎯 Слот зарезервирован! Осталось {remaining} из {limit} запросов на сегодня."
MSG_GRANTED_LAST = "🎯 Слот зарезервирован! Это ваш последний запрос на сегодня."
MSG_STATS = "📊 Использовано {count}/{limit} запросов. Осталось: {remaining}"


@dataclass
class ReservationOutcome:
    can_generate: bool
    daily_count: int
    remaining: int
    is_admin: bool
    limit_reached: bool
    message: str = ""
    limit: Optional[int] = None
    unavailable: bool = False
    snapshot: Optional[UsageSnapshot] = None


def is_private_chat(chat_type: Optional[str]) -> bool:
    return (chat_type or PRIVATE_CHAT) == PRIVATE_CHAT


class SlotReservationService:
    """Резервирование слотов поверх QuotaStore."""

    def __init__(self, store, admin_ids: Iterable[str], limit_private: int = 3, limit_group: int = 30):
        self.store = store
        self.admin_ids = frozenset(str(admin_id) for admin_id in admin_ids)
        self.limit_private = limit_private
        self.limit_group = limit_group

    def is_admin(self, user_id) -> bool:
        return str(user_id) in self.admin_ids

    def limit_for(self, chat_type: Optional[str]) -> int:
        return self.limit_private if is_private_chat(chat_type) else self.limit_group

    def _admin_outcome(self) -> ReservationOutcome:
        return ReservationOutcome(
            can_generate=True,
            daily_count=0,
            remaining=ADMIN_REMAINING,
            is_admin=True,
            limit_reached=False,
            message=MSG_ADMIN,
        )

    def _unavailable_outcome(self, limit: int) -> ReservationOutcome:
        return ReservationOutcome(
            can_generate=False,
            daily_count=0,
            remaining=0,
            is_admin=False,
            limit_reached=True,
            message=MSG_UNAVAILABLE,
            limit=limit,
            unavailable=True,
        )

    def limit_message(self, chat_type: Optional[str], count: int, limit: int) -> str:
        template = MSG_LIMIT_PRIVATE if is_private_chat(chat_type) else MSG_LIMIT_GROUP
        return template.format(count=count, limit=limit, private_limit=self.limit_private)

    async def reserve(self, user_id, display_name: Optional[str], chat_type: Optional[str]) -> ReservationOutcome:
        user_id = str(user_id)
        if self.is_admin(user_id):
            logger.info("👑 Админ %s — безлимитный доступ", user_id)
            return self._admin_outcome()

        limit = self.limit_for(chat_type)
        slot = await self.store.reserve_slot(user_id, display_name, limit)

        if slot.unavailable:
            return self._unavailable_outcome(limit)

        remaining = max(0, limit - slot.count_after)
        if not slot.reserved:
            return ReservationOutcome(
                can_generate=False,
                daily_count=slot.count_after,
                remaining=0,
                is_admin=False,
                limit_reached=True,
                message=self.limit_message(chat_type, slot.count_after, limit),
                limit=limit,
            )

        message = MSG_GRANTED.format(remaining=remaining, limit=limit) if remaining > 0 else MSG_GRANTED_LAST
        return ReservationOutcome(
            can_generate=True,
            daily_count=slot.count_after,
            remaining=remaining,
            is_admin=False,
            limit_reached=False,
            message=message,
            limit=limit,
        )

    async def release(self, user_id) -> None:
        user_id = str(user_id)
        if self.is_admin(user_id):
            return
        await self.store.release_slot(user_id)

    async def stats(self, user_id, chat_type: Optional[str] = PRIVATE_CHAT) -> ReservationOutcome:
        """Статистика без изменения счётчиков."""
        user_id = str(user_id)
        if self.is_admin(user_id):
            return self._admin_outcome()

        limit = self.limit_for(chat_type)
        try:
            snapshot = await self.store.read_stats(user_id)
        except STORAGE_ERRORS:
            logger.exception("❌ Не удалось прочитать статистику: user=%s", user_id)
            return self._unavailable_outcome(limit)

        count = snapshot.daily_count
        remaining = max(0, limit - count)
        limit_reached = count >= limit
        return ReservationOutcome(
            can_generate=not limit_reached,
            daily_count=count,
            remaining=remaining,
            is_admin=False,
            limit_reached=limit_reached,
            message=self.limit_message(chat_type, count, limit) if limit_reached
            else MSG_STATS.format(count=count, limit=limit, remaining=remaining),
            limit=limit,
            snapshot=snapshot,
        )
