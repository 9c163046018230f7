# generator.py
"""
Оркестратор генерации: резерв слота -> провайдеры -> история -> доставка.

Слот резервируется до генерации и возвращается только если ни один
провайдер не смог создать изображение. Ошибка доставки слот не возвращает.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from limits import ReservationOutcome

logger = logging.getLogger(__name__)

MSG_FAILED = "❌ Не удалось сгенерировать изображение. Попробуйте другое описание!"
MSG_ERROR = "❌ Ошибка при генерации. Попробуйте ещё раз позже."
MSG_DONE = "✅ Готово!"


class GenerationStatus(str, Enum):
    DENIED = "denied"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"
    DONE = "done"
    DELIVERY_FAILED = "delivery_failed"


@dataclass
class GenerationRequest:
    prompt: str
    user_id: str
    chat_id: str
    chat_type: str = "private"
    display_name: Optional[str] = None
    source_images: List[str] = field(default_factory=list)
    reply_to: Optional[str] = None


@dataclass
class GenerationOutcome:
    status: GenerationStatus
    message: str
    reservation: Optional[ReservationOutcome] = None
    provider: Optional[str] = None
    error: Optional[str] = None
    image_url: Optional[str] = None
    delivered_message_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == GenerationStatus.DONE


class GenerationOrchestrator:
    def __init__(self, slots, executor, history, delivery, store=None, max_source_images=4):
        self.slots = slots
        self.executor = executor
        self.history = history
        self.delivery = delivery
        self.store = store if store is not None else slots.store
        self.max_source_images = max_source_images

    async def run(self, request: GenerationRequest) -> GenerationOutcome:
        user_id = str(request.user_id)
        logger.info("🎨 Запрос генерации: user=%s chat=%s type=%s images=%s",
                    user_id, request.chat_id, request.chat_type, len(request.source_images))

        try:
            reservation = await self.slots.reserve(user_id, request.display_name, request.chat_type)
        except Exception as e:
            # Слот не зарезервирован, возвращать нечего
            logger.exception("❌ Ошибка резервирования слота: user=%s", user_id)
            await self._notify(request, MSG_ERROR)
            return GenerationOutcome(status=GenerationStatus.UNAVAILABLE, message=MSG_ERROR, error=str(e))

        if not reservation.can_generate:
            status = GenerationStatus.UNAVAILABLE if reservation.unavailable else GenerationStatus.DENIED
            await self._notify(request, reservation.message)
            return GenerationOutcome(status=status, message=reservation.message, reservation=reservation)

        generated = False
        released = False
        try:
            sources = await self._load_sources(request.source_images)
            result = await self.executor.generate(request.prompt, sources)

            if not result.success:
                await self._compensate(user_id, reservation)
                released = True
                message = self._failure_message(reservation)
                await self._notify(request, message)
                return GenerationOutcome(status=GenerationStatus.FAILED, message=message,
                                         reservation=reservation, error=result.error)

            generated = True
            image_url = f"{result.provider}://generated/{int(time.time() * 1000)}-{user_id}"
            await self._record(user_id, request.prompt, image_url)

            sent = await self.delivery.send_photo(
                request.chat_id, result.image, request.reply_to, caption=self._caption(reservation)
            )
            if not sent.success:
                # Изображение создано, слот не возвращаем
                logger.error("❌ Доставка не удалась: user=%s error=%s", user_id, sent.error)
                await self._notify(request, MSG_ERROR)
                return GenerationOutcome(status=GenerationStatus.DELIVERY_FAILED, message=MSG_ERROR,
                                         reservation=reservation, provider=result.provider,
                                         error=sent.error, image_url=image_url)

            await self._finalize(user_id, reservation)
            await self.delivery.forward_to_monitor(request.chat_id, sent.message_id)
            return GenerationOutcome(status=GenerationStatus.DONE, message=MSG_DONE,
                                     reservation=reservation, provider=result.provider,
                                     image_url=image_url, delivered_message_id=sent.message_id)

        except Exception as e:
            logger.exception("❌ Непредвиденная ошибка генерации: user=%s", user_id)
            if not generated and not released:
                await self._compensate(user_id, reservation)
            await self._notify(request, MSG_ERROR)
            return GenerationOutcome(status=GenerationStatus.FAILED, message=MSG_ERROR,
                                     reservation=reservation, error=str(e))

    async def _notify(self, request: GenerationRequest, text: str):
        """Текстовый ответ пользователю. Ошибка отправки не прерывает обработку."""
        try:
            await self.delivery.send_text(request.chat_id, text, request.reply_to)
        except Exception:
            logger.exception("⚠️ Не удалось отправить сообщение: chat=%s", request.chat_id)

    async def _load_sources(self, locators):
        sources = []
        for locator in list(locators or [])[:self.max_source_images]:
            try:
                sources.append(await self.delivery.load_source_image(locator))
            except Exception as e:
                logger.warning("⚠️ Не удалось загрузить исходное фото %s: %s", locator[:15], e)
        return sources

    async def _record(self, user_id, prompt, image_url):
        try:
            await self.history.record(user_id, prompt, image_url)
        except Exception:
            logger.exception("⚠️ История не записана: user=%s", user_id)

    async def _compensate(self, user_id, reservation: ReservationOutcome):
        if reservation.is_admin:
            return
        logger.info("↩️ Возвращаем слот после неудачной генерации: user=%s", user_id)
        try:
            await self.slots.release(user_id)
        except Exception:
            logger.exception("❌ Не удалось вернуть слот: user=%s", user_id)

    async def _finalize(self, user_id, reservation: ReservationOutcome):
        """Учёт доставленных генераций. Дневной счётчик уже увеличен при резерве."""
        if reservation.is_admin:
            return
        try:
            await self.store.mark_delivered(user_id)
        except Exception:
            logger.exception("⚠️ Не удалось обновить счётчик доставок: user=%s", user_id)

    @staticmethod
    def _failure_message(reservation: ReservationOutcome) -> str:
        if reservation.is_admin or reservation.limit is None:
            return MSG_FAILED
        remaining = min(reservation.remaining + 1, reservation.limit)
        return f"{MSG_FAILED}\n\n📊 Осталось попыток сегодня: {remaining}/{reservation.limit}"

    @staticmethod
    def _caption(reservation: ReservationOutcome) -> str:
        if reservation.is_admin or reservation.limit is None:
            return MSG_DONE
        return f"{MSG_DONE}\n📊 Осталось сегодня: {reservation.remaining}/{reservation.limit}"
