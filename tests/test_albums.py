"""
Tests for AlbumCollector.

Telegram delivers an album as separate messages sharing a media_group_id;
only one of them usually carries the caption.
"""

import asyncio

from albums import AlbumCollector


async def send_later(collector, delay, key, file_id, caption=None):
    await asyncio.sleep(delay)
    return await collector.collect(key, file_id, caption)


class TestAlbumCollector:
    async def test_album_is_returned_once_with_all_photos(self) -> None:
        collector = AlbumCollector(flush_delay=0.05)
        key = (1, "group-1")

        results = await asyncio.gather(
            collector.collect(key, "f1", "make it blue"),
            send_later(collector, 0.01, key, "f2"),
            send_later(collector, 0.02, key, "f3"),
            send_later(collector, 0.03, key, "f4"),
        )

        album = results[0]
        assert album.file_ids == ["f1", "f2", "f3", "f4"]
        assert album.caption == "make it blue"
        assert results[1:] == [None, None, None]

    async def test_caption_on_a_later_message(self) -> None:
        collector = AlbumCollector(flush_delay=0.05)
        key = (1, "group-2")

        first, second = await asyncio.gather(
            collector.collect(key, "f1"),
            send_later(collector, 0.01, key, "f2", "watercolor style"),
        )

        assert first.caption == "watercolor style"
        assert first.file_ids == ["f1", "f2"]
        assert second is None

    async def test_groups_are_collected_separately(self) -> None:
        collector = AlbumCollector(flush_delay=0.03)

        a, b = await asyncio.gather(
            collector.collect((1, "a"), "a1"),
            collector.collect((2, "b"), "b1"),
        )

        assert a.file_ids == ["a1"]
        assert b.file_ids == ["b1"]

    async def test_key_is_released_after_flush(self) -> None:
        collector = AlbumCollector(flush_delay=0.01)
        key = (1, "group-3")

        await collector.collect(key, "f1")
        again = await collector.collect(key, "f2")

        assert again.file_ids == ["f2"]
