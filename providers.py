# providers.py
"""
Провайдеры генерации изображений и цепочка fallback.

Каждый провайдер приводит ответ своего API к единому ProviderResult.
FallbackExecutor перебирает провайдеров в фиксированном порядке
и возвращает первый успешный результат.
"""

import asyncio
import base64
import binascii
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence
from urllib.parse import quote

import aiohttp
import replicate

logger = logging.getLogger(__name__)

DEFAULT_MIN_IMAGE_BYTES = 1000
DEFAULT_MAX_SOURCE_IMAGES = 4
DEFAULT_REPLICATE_WORKERS = 4


@dataclass
class SourceImage:
    data: bytes
    mime_type: str = "image/jpeg"

    def as_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class ProviderResult:
    success: bool
    image: Optional[bytes] = None
    error: Optional[str] = None
    provider: Optional[str] = None


def detect_mime(data: bytes, fallback: str = "image/jpeg") -> str:
    """Определение MIME по сигнатуре файла (Telegram не всегда отдаёт Content-Type)"""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"GIF8"):
        return "image/gif"
    if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "image/webp"
    return fallback


def decode_base64_image(value: str) -> Optional[bytes]:
    if not value:
        return None
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    try:
        return base64.b64decode(re.sub(r"\s", "", value), validate=True)
    except (binascii.Error, ValueError):
        return None


class ImageProvider:
    """Базовый адаптер: attempt(prompt, source_images) -> ProviderResult"""

    name = "base"
    supports_source_images = False

    def __init__(self, session: aiohttp.ClientSession, min_image_bytes: int = DEFAULT_MIN_IMAGE_BYTES):
        self.session = session
        self.min_image_bytes = min_image_bytes

    async def attempt(self, prompt: str, source_images: Sequence[SourceImage] = ()) -> ProviderResult:
        raise NotImplementedError

    def ok(self, image: Optional[bytes]) -> ProviderResult:
        """Слишком маленький ответ считается ошибкой, а не картинкой."""
        size = len(image) if image else 0
        if size < self.min_image_bytes:
            return self.fail(f"image too small ({size} bytes)")
        return ProviderResult(success=True, image=image, provider=self.name)

    def fail(self, error: str) -> ProviderResult:
        return ProviderResult(success=False, error=f"{self.name}: {error}", provider=self.name)

    async def download(self, url: str) -> Optional[bytes]:
        async with self.session.get(url) as response:
            if response.status != 200:
                return None
            return await response.read()

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


# ===== HUBAI (OpenAI-совместимый API) =====

DATA_URL_RE = re.compile(r"data:image/[\w.+-]+;base64,([A-Za-z0-9+/=\s]+)")


class HubaiChatProvider(ImageProvider):
    """Gemini 2.5 Flash Image через chat/completions. Умеет работать по фото."""

    name = "hubai_chat"
    supports_source_images = True

    def __init__(self, session, api_key, base_url, model, min_image_bytes=DEFAULT_MIN_IMAGE_BYTES):
        super().__init__(session, min_image_bytes)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model

    def build_prompt(self, prompt, has_images):
        if has_images:
            return (
                f"Create a new image inspired by the uploaded image(s). {prompt}.\n"
                "Style: High quality, detailed, creative interpretation.\n"
                "Output: Return the generated image."
            )
        return (
            f"Generate an image: {prompt}.\n"
            "Style: High quality, detailed, photorealistic.\n"
            "Output: Return the generated image."
        )

    @staticmethod
    def extract_image(message: dict) -> Optional[bytes]:
        # Формат с отдельным списком images
        for item in message.get("images") or []:
            url = (item.get("image_url") or {}).get("url", "")
            image = decode_base64_image(url)
            if image:
                return image

        content = message.get("content")
        if isinstance(content, list):
            for part in content:
                if part.get("type") == "image_url":
                    image = decode_base64_image((part.get("image_url") or {}).get("url", ""))
                    if image:
                        return image
        elif isinstance(content, str):
            match = DATA_URL_RE.search(content)
            if match:
                return decode_base64_image(match.group(1))
        return None

    async def attempt(self, prompt, source_images=()):
        content = [
            {"type": "image_url", "image_url": {"url": image.as_data_url()}}
            for image in source_images
        ]
        content.append({"type": "text", "text": self.build_prompt(prompt, bool(source_images))})

        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": 4096,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with self.session.post(f"{self.base_url}/chat/completions", json=payload, headers=headers) as response:
            if response.status != 200:
                return self.fail(f"HTTP {response.status}: {(await response.text())[:200]}")
            result = await response.json(content_type=None)

        choices = result.get("choices") or []
        if not choices:
            return self.fail("no choices in response")
        return self.ok(self.extract_image(choices[0].get("message") or {}))


class HubaiImagesProvider(ImageProvider):
    """Imagen через images/generations (b64_json)."""

    name = "hubai_images"

    def __init__(self, session, api_key, base_url, model, min_image_bytes=DEFAULT_MIN_IMAGE_BYTES):
        super().__init__(session, min_image_bytes)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model

    async def attempt(self, prompt, source_images=()):
        payload = {
            "model": self.model,
            "prompt": prompt,
            "n": 1,
            "size": "1024x1024",
            "response_format": "b64_json",
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with self.session.post(f"{self.base_url}/images/generations", json=payload, headers=headers) as response:
            if response.status != 200:
                return self.fail(f"HTTP {response.status}: {(await response.text())[:200]}")
            result = await response.json(content_type=None)

        data = result.get("data") or []
        if not data:
            return self.fail("empty data")
        item = data[0]
        if item.get("b64_json"):
            return self.ok(decode_base64_image(item["b64_json"]))
        if item.get("url"):
            return self.ok(await self.download(item["url"]))
        return self.fail("no image in response")


# ===== REPLICATE =====

class ReplicateProvider(ImageProvider):
    name = "replicate"

    def __init__(self, session, api_token, model, aspect_ratio="1:1", output_format="webp",
                 min_image_bytes=DEFAULT_MIN_IMAGE_BYTES, max_workers=DEFAULT_REPLICATE_WORKERS):
        super().__init__(session, min_image_bytes)
        self.client = replicate.Client(api_token=api_token)
        # wait_for не останавливает поток: зависшие вызовы ограничены размером пула
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="replicate")
        self.model = model
        self.aspect_ratio = aspect_ratio
        self.output_format = output_format

    async def attempt(self, prompt, source_images=()):
        input_data = {
            "prompt": f"{prompt}, high quality, detailed, professional, 4k",
            "aspect_ratio": self.aspect_ratio,
            "output_format": self.output_format,
        }

        # replicate.run синхронный, выносим в пул потоков
        loop = asyncio.get_running_loop()
        output = await loop.run_in_executor(
            self.executor,
            lambda: self.client.run(self.model, input=input_data)
        )

        if not output:
            return self.fail("empty output")

        item = output[0] if isinstance(output, (list, tuple)) else output
        if hasattr(item, "read"):
            return self.ok(await loop.run_in_executor(self.executor, item.read))
        return self.ok(await self.download(str(item)))


# ===== БЕСПЛАТНЫЕ СЕРВИСЫ =====

class PollinationsProvider(ImageProvider):
    name = "pollinations"
    base_url = "https://image.pollinations.ai/prompt/"

    async def attempt(self, prompt, source_images=()):
        params = {"width": "1024", "height": "1024", "model": "flux", "nologo": "true"}
        async with self.session.get(self.base_url + quote(prompt, safe=""), params=params) as response:
            if response.status != 200:
                return self.fail(f"HTTP {response.status}")
            if not response.content_type.startswith("image/"):
                return self.fail(f"unexpected content type {response.content_type}")
            return self.ok(await response.read())


class DeepAIProvider(ImageProvider):
    name = "deepai"
    url = "https://api.deepai.org/api/text2img"

    def __init__(self, session, api_key, min_image_bytes=DEFAULT_MIN_IMAGE_BYTES):
        super().__init__(session, min_image_bytes)
        self.api_key = api_key

    async def attempt(self, prompt, source_images=()):
        form = {"text": f"High quality, detailed, beautiful: {prompt}"}
        async with self.session.post(self.url, data=form, headers={"api-key": self.api_key}) as response:
            if response.status != 200:
                return self.fail(f"HTTP {response.status}")
            result = await response.json(content_type=None)

        output_url = result.get("output_url")
        if not output_url:
            return self.fail("no output_url")
        return self.ok(await self.download(output_url))


# ===== РЕЕСТР =====

# Имя -> (параметр с ключом доступа или None, фабрика)
PROVIDER_REGISTRY = {
    "hubai_chat": ("hubai_api_key", lambda session, o: HubaiChatProvider(
        session, o["hubai_api_key"], o["hubai_base_url"], o["hubai_chat_model"], o["min_image_bytes"])),
    "hubai_images": ("hubai_api_key", lambda session, o: HubaiImagesProvider(
        session, o["hubai_api_key"], o["hubai_base_url"], o["hubai_images_model"], o["min_image_bytes"])),
    "replicate": ("replicate_api_token", lambda session, o: ReplicateProvider(
        session, o["replicate_api_token"], o["replicate_model"], o["replicate_aspect_ratio"],
        o["replicate_output_format"], o["min_image_bytes"])),
    "pollinations": (None, lambda session, o: PollinationsProvider(session, o["min_image_bytes"])),
    "deepai": ("deepai_api_key", lambda session, o: DeepAIProvider(
        session, o["deepai_api_key"], o["min_image_bytes"])),
}


def build_providers(names: Sequence[str], session: aiohttp.ClientSession, *,
                    min_image_bytes=DEFAULT_MIN_IMAGE_BYTES,
                    hubai_api_key=None, hubai_base_url="https://hubai.loe.gg/v1",
                    hubai_chat_model="gemini-2.5-flash-image-preview",
                    hubai_images_model="imagen-4.0-fast-generate-001",
                    replicate_api_token=None, replicate_model="black-forest-labs/flux-dev",
                    replicate_aspect_ratio="1:1", replicate_output_format="webp",
                    deepai_api_key=None) -> List[ImageProvider]:
    """Собирает упорядоченный список провайдеров по именам из конфигурации.

    Провайдеры без ключа пропускаются с предупреждением.
    """
    options = dict(
        min_image_bytes=min_image_bytes,
        hubai_api_key=hubai_api_key,
        hubai_base_url=hubai_base_url,
        hubai_chat_model=hubai_chat_model,
        hubai_images_model=hubai_images_model,
        replicate_api_token=replicate_api_token,
        replicate_model=replicate_model,
        replicate_aspect_ratio=replicate_aspect_ratio,
        replicate_output_format=replicate_output_format,
        deepai_api_key=deepai_api_key,
    )

    providers = []
    for name in names:
        if name not in PROVIDER_REGISTRY:
            raise ValueError(f"❌ Неизвестный провайдер: {name}")
        credential, factory = PROVIDER_REGISTRY[name]
        if credential and not options[credential]:
            logger.warning("⚠️ Провайдер %s пропущен: не задан API ключ", name)
            continue
        providers.append(factory(session, options))

    if not providers:
        raise ValueError("❌ Не настроено ни одного провайдера генерации")
    logger.info("🔧 Провайдеры генерации: %s", ", ".join(p.name for p in providers))
    return providers


class FallbackExecutor:
    """Перебор провайдеров по приоритету до первого успеха."""

    def __init__(self, providers: Sequence[ImageProvider], attempt_timeout: float = 60,
                 max_source_images: int = DEFAULT_MAX_SOURCE_IMAGES):
        self.providers = list(providers)
        self.attempt_timeout = attempt_timeout
        self.max_source_images = max_source_images

    async def _attempt(self, provider, prompt, source_images) -> ProviderResult:
        images = source_images if provider.supports_source_images else ()
        try:
            result = await asyncio.wait_for(provider.attempt(prompt, images), timeout=self.attempt_timeout)
        except asyncio.TimeoutError:
            return ProviderResult(success=False, error=f"{provider.name}: timeout after {self.attempt_timeout}s",
                                  provider=provider.name)
        except Exception as e:
            return ProviderResult(success=False, error=f"{provider.name}: {type(e).__name__}: {e}",
                                  provider=provider.name)

        if result.success and not result.image:
            return ProviderResult(success=False, error=f"{provider.name}: empty image", provider=provider.name)
        return result

    async def generate(self, prompt: str, source_images: Sequence[SourceImage] = ()) -> ProviderResult:
        source_images = list(source_images or ())[:self.max_source_images]
        last_error = "no providers configured"

        for provider in self.providers:
            logger.info("🔧 Пробуем провайдера %s", provider.name)
            result = await self._attempt(provider, prompt, source_images)
            if result.success:
                logger.info("✅ %s: изображение получено (%s байт)", provider.name, len(result.image))
                return result
            last_error = result.error or f"{provider.name}: unknown error"
            logger.warning("⚠️ %s не справился, пробуем следующего: %s", provider.name, last_error)

        logger.error("❌ Все провайдеры не справились: %s", last_error)
        return ProviderResult(success=False, error=last_error)
