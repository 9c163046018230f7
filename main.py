# main.py
"""
AI Image Generator Bot: Telegram бот для генерации изображений через ИИ
с дневными лимитами и перебором провайдеров генерации.
"""

import asyncio
import html
import logging

import aiohttp
from aiogram import Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ChatAction, ParseMode
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.types import Message

import config
from albums import AlbumCollector
from database import STORAGE_ERRORS, Database, HistoryRecorder, QuotaStore
from delivery import TelegramDelivery
from generator import GenerationOrchestrator, GenerationRequest
from keyboards import BTN_GENERATE, BTN_HELP, BTN_HISTORY, BTN_STATS, get_main_keyboard
from limits import MSG_UNAVAILABLE, SlotReservationService
from providers import FallbackExecutor, build_providers

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Инициализация
bot = Bot(token=config.TELEGRAM_TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
dp = Dispatcher(storage=MemoryStorage())


# Состояния для FSM
class GenerationStates(StatesGroup):
    waiting_for_prompt = State()


def _display_name(user):
    return user.username or user.full_name or f"user_{user.id}"


def _shorten(text, size=40):
    return text[:size] + "..." if len(text) > size else text


# ===== КОМАНДА /start =====
@dp.message(Command("start"))
async def cmd_start(message: Message, state: FSMContext, store: QuotaStore):
    user = message.from_user
    await state.clear()

    try:
        await store.ensure_user(str(user.id), _display_name(user))
    except STORAGE_ERRORS:
        logger.exception("⚠️ Не удалось зарегистрировать пользователя %s", user.id)

    await message.answer(
        "🎨 <b>Добро пожаловать в AI Image Generator!</b>\n\n"
        "📝 <b>Как это работает:</b>\n"
        "1️⃣ Напишите описание изображения на русском или английском.\n"
        "2️⃣ Или пришлите фото с подписью — создам новое изображение на его основе.\n"
        "3️⃣ Получите результат за 10-30 секунд.\n\n"
        f"🎁 Бесплатно: <b>{config.DAILY_LIMIT_PRIVATE}</b> изображения в день в личных сообщениях.",
        reply_markup=get_main_keyboard()
    )


# ===== КНОПКА "Создать изображение" =====
@dp.message(F.text == BTN_GENERATE)
async def btn_generate(message: Message, state: FSMContext):
    await message.answer(
        "🎨 <b>Введите описание изображения:</b>\n\n"
        "💡 Можно на русском или английском.\n"
        "Пример: <code>Фотореалистичный портрет девушки с рыжими волосами в парке, закат, 85мм</code>"
    )
    await state.set_state(GenerationStates.waiting_for_prompt)


# ===== КОМАНДА /stats =====
@dp.message(Command("stats"))
@dp.message(F.text == BTN_STATS)
async def cmd_stats(message: Message, slots: SlotReservationService, history: HistoryRecorder):
    user_id = str(message.from_user.id)
    outcome = await slots.stats(user_id, message.chat.type)
    if outcome.unavailable:
        await message.answer(outcome.message)
        return

    if outcome.is_admin:
        text = (
            "📊 <b>Ваша статистика:</b>\n"
            "👑 <b>АДМИНИСТРАТОР</b>\n\n"
            "💡 Вам доступна безлимитная генерация!"
        )
        await message.answer(text, reply_markup=get_main_keyboard())
        return

    snapshot = outcome.snapshot
    try:
        recent = await history.recent(user_id, limit=3)
    except STORAGE_ERRORS:
        logger.exception("❌ Не удалось получить статистику: user=%s", user_id)
        await message.answer(MSG_UNAVAILABLE)
        return

    text = (
        "📊 <b>Ваша статистика:</b>\n\n"
        f"🔸 За сегодня: <b>{outcome.daily_count}/{outcome.limit}</b>\n"
        f"🔸 Осталось сегодня: <b>{outcome.remaining}</b>\n"
        f"🔸 Всего получено: <b>{snapshot.total_generations}</b>\n"
    )
    if snapshot.last_reset_date:
        text += f"🔸 Последний сброс: {snapshot.last_reset_date:%d.%m.%Y}\n"
    if recent:
        text += "\n🎨 <b>Последние генерации:</b>\n"
        for i, gen in enumerate(recent, 1):
            text += f"{i}. <code>{html.escape(_shorten(gen['prompt']))}</code>\n"
    text += "\n💡 Лимит сбрасывается каждый день в 00:00"

    await message.answer(text, reply_markup=get_main_keyboard())


# ===== КОМАНДА /history =====
@dp.message(Command("history"))
@dp.message(F.text == BTN_HISTORY)
async def cmd_history(message: Message, history: HistoryRecorder):
    user_id = str(message.from_user.id)
    try:
        gens = await history.recent(user_id, limit=config.HISTORY_LIMIT)
        total = await history.count(user_id)
    except STORAGE_ERRORS:
        logger.exception("❌ Не удалось получить историю: user=%s", user_id)
        await message.answer(MSG_UNAVAILABLE)
        return

    if not gens:
        await message.answer(
            "📚 <b>История пуста.</b>\nСоздайте первое изображение!",
            reply_markup=get_main_keyboard()
        )
        return

    text = f"📚 <b>Ваши последние генерации</b> (всего: {total}):\n\n"
    for i, gen in enumerate(gens, 1):
        date = gen['created_at'].strftime("%d.%m %H:%M")
        text += f"{i}. {date} — <code>{html.escape(_shorten(gen['prompt']))}</code>\n"

    await message.answer(text)


# ===== КОМАНДА /help =====
@dp.message(Command("help"))
@dp.message(F.text == BTN_HELP)
async def cmd_help(message: Message):
    await message.answer(
        "❓ <b>Помощь</b>\n\n"
        "✅ <b>Будьте конкретны:</b>\n"
        "«Кот» → «Фотореалистичный кот сиамской породы на подоконнике, солнечный свет, 85мм»\n\n"
        "✅ <b>Добавляйте детали:</b>\n"
        "• Стиль: фотография, аниме, цифровая живопись\n"
        "• Освещение: закат, студийный свет, неоновое\n\n"
        f"🖼️ <b>По фото:</b> пришлите до {config.MAX_SOURCE_IMAGES} фото и напишите, что с ними сделать.\n\n"
        f"📊 Лимит: {config.DAILY_LIMIT_PRIVATE} в день в личке, "
        f"{config.DAILY_LIMIT_GROUP} в день в группах.",
        reply_markup=get_main_keyboard()
    )


# ===== ФОТО =====
@dp.message(F.photo)
async def process_photo(message: Message, state: FSMContext, orchestrator: GenerationOrchestrator,
                        albums: AlbumCollector):
    file_ids = [message.photo[-1].file_id]
    caption = message.caption

    # Альбом приходит отдельными сообщениями: собираем его целиком
    if message.media_group_id:
        album = await albums.collect(
            (message.chat.id, message.media_group_id), file_ids[0], caption
        )
        if album is None:
            return
        file_ids, caption = album.file_ids, album.caption

    data = await state.get_data()
    stored = data.get("photos", [])
    photos = (stored + file_ids)[:config.MAX_SOURCE_IMAGES]

    if caption and caption.strip():
        await state.clear()
        await run_generation(message, caption.strip(), photos, orchestrator)
        return

    # Фото без текста: запоминаем и спрашиваем, что сделать
    await state.update_data(photos=photos)
    await state.set_state(GenerationStates.waiting_for_prompt)

    if not stored:
        await message.answer(
            "Что хочешь сделать с этими фотками?" if len(photos) > 1
            else "Что хочешь сделать с этой фоткой?"
        )


# ===== ПОЛУЧЕНИЕ ПРОМПТА =====
@dp.message(F.text & ~F.text.startswith("/"))
async def process_prompt(message: Message, state: FSMContext, orchestrator: GenerationOrchestrator):
    prompt = message.text.strip()

    if len(prompt) < config.MIN_PROMPT_LENGTH:
        await message.answer("❌ Промпт слишком короткий! Напишите подробнее.")
        return

    if len(prompt) > config.MAX_PROMPT_LENGTH:
        await message.answer(f"❌ Промпт слишком длинный! Максимум {config.MAX_PROMPT_LENGTH} символов.")
        return

    data = await state.get_data()
    photos = data.get("photos", [])
    await state.clear()
    await run_generation(message, prompt, photos, orchestrator)


# ===== ФИНАЛЬНАЯ ГЕНЕРАЦИЯ =====
async def run_generation(message: Message, prompt, photos, orchestrator: GenerationOrchestrator):
    user = message.from_user

    # Индикатор "отправляет фото..."
    await bot.send_chat_action(message.chat.id, ChatAction.UPLOAD_PHOTO)

    outcome = await orchestrator.run(GenerationRequest(
        prompt=prompt,
        user_id=str(user.id),
        chat_id=str(message.chat.id),
        chat_type=message.chat.type,
        display_name=_display_name(user),
        source_images=photos,
        reply_to=str(message.message_id),
    ))
    logger.info("🏁 Генерация завершена: user=%s status=%s provider=%s",
                user.id, outcome.status.value, outcome.provider)


# ===== ЗАПУСК БОТА =====
async def main():
    """Основная функция запуска"""
    db = Database(config.DATABASE_URL, max_size=config.DB_POOL_MAX_SIZE)
    logger.info("Инициализация базы данных...")
    await db.connect()
    await db.create_tables()
    logger.info("База данных готова")

    session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=config.PROVIDER_TIMEOUT))
    try:
        store = QuotaStore(db)
        history = HistoryRecorder(db)
        slots = SlotReservationService(
            store,
            admin_ids=config.ADMIN_USER_IDS,
            limit_private=config.DAILY_LIMIT_PRIVATE,
            limit_group=config.DAILY_LIMIT_GROUP,
        )
        providers = build_providers(
            config.PROVIDER_ORDER,
            session,
            min_image_bytes=config.MIN_IMAGE_BYTES,
            hubai_api_key=config.HUBAI_API_KEY,
            hubai_base_url=config.HUBAI_BASE_URL,
            hubai_chat_model=config.HUBAI_CHAT_MODEL,
            hubai_images_model=config.HUBAI_IMAGES_MODEL,
            replicate_api_token=config.REPLICATE_API_TOKEN,
            replicate_model=config.REPLICATE_MODEL,
            replicate_aspect_ratio=config.DEFAULT_ASPECT_RATIO,
            replicate_output_format=config.DEFAULT_OUTPUT_FORMAT,
            deepai_api_key=config.DEEPAI_API_KEY,
        )
        executor = FallbackExecutor(
            providers,
            attempt_timeout=config.PROVIDER_TIMEOUT,
            max_source_images=config.MAX_SOURCE_IMAGES,
        )
        delivery = TelegramDelivery(bot, session, monitor_chat_id=config.ADMIN_MONITOR_CHAT_ID)
        albums = AlbumCollector(flush_delay=config.ALBUM_FLUSH_DELAY)
        orchestrator = GenerationOrchestrator(
            slots, executor, history, delivery, store=store,
            max_source_images=config.MAX_SOURCE_IMAGES,
        )

        logger.info("Запуск бота...")
        await dp.start_polling(
            bot,
            store=store,
            history=history,
            slots=slots,
            orchestrator=orchestrator,
            albums=albums,
        )
    finally:
        await session.close()
        await db.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Бот остановлен пользователем")
