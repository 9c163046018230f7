# config.py
import os
from dotenv import load_dotenv

load_dotenv()


def _csv(name, default=""):
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# 🔴 Проверка наличия обязательных переменных
TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN")
if not TELEGRAM_TOKEN:
    raise ValueError("❌ TELEGRAM_TOKEN не установлен в переменных окружения")

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError("❌ DATABASE_URL не установлен в переменных окружения")

DB_POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE", "10"))

# Лимиты
DAILY_LIMIT_PRIVATE = int(os.getenv("DAILY_LIMIT_PRIVATE", "3"))
DAILY_LIMIT_GROUP = int(os.getenv("DAILY_LIMIT_GROUP", "30"))
ADMIN_USER_IDS = frozenset(_csv("ADMIN_USER_IDS"))
ADMIN_MONITOR_CHAT_ID = os.getenv("ADMIN_MONITOR_CHAT_ID") or None

# Провайдеры генерации (порядок = приоритет)
PROVIDER_ORDER = _csv(
    "PROVIDER_ORDER", "hubai_chat,hubai_images,replicate,pollinations,deepai"
)
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "60"))
MIN_IMAGE_BYTES = int(os.getenv("MIN_IMAGE_BYTES", "1000"))
MAX_SOURCE_IMAGES = int(os.getenv("MAX_SOURCE_IMAGES", "4"))
# Пауза тишины, после которой альбом считается полученным целиком
ALBUM_FLUSH_DELAY = float(os.getenv("ALBUM_FLUSH_DELAY", "1.0"))

HUBAI_API_KEY = os.getenv("HUBAI_API_KEY")
HUBAI_BASE_URL = os.getenv("HUBAI_BASE_URL", "https://hubai.loe.gg/v1")
HUBAI_CHAT_MODEL = os.getenv("HUBAI_CHAT_MODEL", "gemini-2.5-flash-image-preview")
HUBAI_IMAGES_MODEL = os.getenv("HUBAI_IMAGES_MODEL", "imagen-4.0-fast-generate-001")

# Replicate (поддерживается и старое имя REPLICATE_API_KEY)
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN") or os.getenv("REPLICATE_API_KEY")
REPLICATE_MODEL = os.getenv("REPLICATE_MODEL", "black-forest-labs/flux-dev")
DEFAULT_ASPECT_RATIO = "1:1"
DEFAULT_OUTPUT_FORMAT = "webp"

DEEPAI_API_KEY = os.getenv("DEEPAI_API_KEY")

# Бизнес-логика
MIN_PROMPT_LENGTH = 3
MAX_PROMPT_LENGTH = int(os.getenv("MAX_PROMPT_LENGTH", "1000"))
HISTORY_LIMIT = 10
