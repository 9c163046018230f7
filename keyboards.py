# keyboards.py
from aiogram.types import ReplyKeyboardMarkup, KeyboardButton

BTN_GENERATE = "🎨 Создать изображение"
BTN_STATS = "📊 Статистика"
BTN_HISTORY = "📚 История"
BTN_HELP = "❓ Помощь"


def get_main_keyboard():
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text=BTN_GENERATE)],
            [KeyboardButton(text=BTN_STATS), KeyboardButton(text=BTN_HISTORY)],
            [KeyboardButton(text=BTN_HELP)]
        ],
        resize_keyboard=True
    )
