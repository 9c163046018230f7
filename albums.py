# albums.py
"""
Сборка альбомов Telegram.

Альбом приходит пачкой отдельных сообщений с общим media_group_id,
подпись обычно есть только у одного из них. Первое сообщение ждёт, пока
поток фото не затихнет на flush_delay секунд, и забирает альбом целиком.
Остальные сообщения только добавляют свои фото.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class PendingAlbum:
    file_ids: List[str] = field(default_factory=list)
    caption: Optional[str] = None
    touched: float = 0.0


class AlbumCollector:
    def __init__(self, flush_delay: float = 1.0):
        self.flush_delay = flush_delay
        self._pending: Dict[Hashable, PendingAlbum] = {}

    async def collect(self, key: Hashable, file_id: str, caption: Optional[str] = None) -> Optional[PendingAlbum]:
        """Возвращает собранный альбом первому сообщению группы, остальным None."""
        loop = asyncio.get_running_loop()

        album = self._pending.get(key)
        if album is not None:
            album.file_ids.append(file_id)
            if caption and caption.strip():
                album.caption = caption
            album.touched = loop.time()
            return None

        album = PendingAlbum(file_ids=[file_id], caption=caption, touched=loop.time())
        self._pending[key] = album
        try:
            while True:
                wait = album.touched + self.flush_delay - loop.time()
                if wait <= 0:
                    break
                await asyncio.sleep(wait)
        finally:
            self._pending.pop(key, None)

        logger.info("🖼️ Альбом получен: %s фото, подпись=%s", len(album.file_ids), bool(album.caption))
        return album
