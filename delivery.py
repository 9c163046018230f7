# delivery.py
"""Доставка результатов в Telegram и загрузка исходных фото."""

import io
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp
from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from aiogram.types import BufferedInputFile

from providers import SourceImage, detect_mime

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class TelegramDelivery:
    def __init__(self, bot: Bot, session: Optional[aiohttp.ClientSession] = None,
                 monitor_chat_id: Optional[str] = None):
        self.bot = bot
        self.session = session
        self.monitor_chat_id = monitor_chat_id

    async def send_photo(self, chat_id, image: bytes, reply_to=None, caption=None) -> DeliveryResult:
        try:
            sent = await self.bot.send_photo(
                chat_id=chat_id,
                photo=BufferedInputFile(image, filename="generated_image.jpg"),
                caption=caption,
                reply_to_message_id=int(reply_to) if reply_to else None,
            )
        except TelegramAPIError as e:
            logger.error("❌ Не удалось отправить фото в чат %s: %s", chat_id, e)
            return DeliveryResult(success=False, error=str(e))
        return DeliveryResult(success=True, message_id=str(sent.message_id))

    async def send_text(self, chat_id, text: str, reply_to=None) -> DeliveryResult:
        try:
            sent = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                reply_to_message_id=int(reply_to) if reply_to else None,
            )
        except TelegramAPIError as e:
            logger.error("❌ Не удалось отправить сообщение в чат %s: %s", chat_id, e)
            return DeliveryResult(success=False, error=str(e))
        return DeliveryResult(success=True, message_id=str(sent.message_id))

    async def forward_to_monitor(self, chat_id, message_id) -> None:
        """Пересылка генерации в чат мониторинга администратора"""
        if not self.monitor_chat_id or str(chat_id) == str(self.monitor_chat_id):
            return
        try:
            await self.bot.forward_message(
                chat_id=self.monitor_chat_id,
                from_chat_id=chat_id,
                message_id=int(message_id),
            )
        except TelegramAPIError as e:
            logger.warning("⚠️ Не удалось переслать в чат мониторинга: %s", e)

    async def load_source_image(self, locator: str) -> SourceImage:
        """file_id Telegram или http(s) URL -> байты изображения.

        Файл скачивается локально, токен бота наружу не передаётся.
        """
        if locator.startswith(("http://", "https://")):
            if self.session is None:
                raise ValueError("HTTP session is required to download source images by URL")
            async with self.session.get(locator) as response:
                response.raise_for_status()
                data = await response.read()
                fallback = response.content_type if response.content_type.startswith("image/") else "image/jpeg"
                return SourceImage(data=data, mime_type=detect_mime(data, fallback))

        file = await self.bot.get_file(locator)
        buffer = io.BytesIO()
        await self.bot.download_file(file.file_path, destination=buffer)
        data = buffer.getvalue()
        return SourceImage(data=data, mime_type=detect_mime(data))
