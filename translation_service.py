from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Final, Optional, Protocol

import httpx
from openai import APIStatusError, AsyncOpenAI

from config_utils import read_float_env, read_int_env, read_str_env


@dataclass(frozen=True)
class TranslationResult:
    text: str
    fallback_reason: str = ""

    @property
    def ok(self) -> bool:
        return not self.fallback_reason


class TranslationProvider(Protocol):
    source_lang: str
    target_lang: str

    async def translate(
        self,
        text: str,
        source_lang: Optional[str] = None,
        target_lang: Optional[str] = None,
    ) -> TranslationResult:
        ...

    async def aclose(self) -> None:
        ...


def _sanitize(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


class GoogleTranslationService:
    GOOGLE_URL: Final[str] = "https://translate.googleapis.com/translate_a/single"
    MYMEMORY_URL: Final[str] = "https://api.mymemory.translated.net/get"

    def __init__(
        self,
        source_lang: str = "zh",
        target_lang: str = "en",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.source_lang = read_str_env("TRANSLATION_SOURCE_LANG", source_lang)
        self.target_lang = read_str_env("TRANSLATION_TARGET_LANG", target_lang)
        timeout = read_float_env("TRANSLATION_TIMEOUT_SECONDS", 6.0)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def set_language_pair(self, source_lang: str, target_lang: str) -> None:
        self.source_lang = source_lang
        self.target_lang = target_lang

    async def translate(
        self,
        text: str,
        source_lang: Optional[str] = None,
        target_lang: Optional[str] = None,
    ) -> TranslationResult:
        cleaned = _sanitize(text)
        if not cleaned:
            return TranslationResult("")
        source = source_lang or self.source_lang
        target = target_lang or self.target_lang

        try:
            return TranslationResult(await self._translate_google(cleaned, source, target))
        except (httpx.HTTPError, ValueError, LookupError, TypeError) as exc:
            logging.warning("translation_primary_failed provider=google error=%s", exc)

        try:
            return TranslationResult(await self._translate_mymemory(cleaned, source, target))
        except (httpx.HTTPError, ValueError, LookupError, TypeError) as exc:
            logging.warning("translation_fallback_failed provider=mymemory error=%s", exc)
            return TranslationResult("", fallback_reason=f"translation_failed: {exc}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _translate_google(self, text: str, source: str, target: str) -> str:
        response = await self._client.get(
            self.GOOGLE_URL,
            params={"client": "gtx", "sl": source, "tl": target, "dt": "t", "q": text},
        )
        response.raise_for_status()
        data: Any = response.json()
        if not data or not data[0]:
            raise ValueError("Google translation payload has no segments")
        translated = "".join(str(segment[0]) for segment in data[0] if segment and segment[0])
        if not translated.strip():
            raise ValueError("Google translation payload is empty")
        return translated.strip()

    async def _translate_mymemory(self, text: str, source: str, target: str) -> str:
        response = await self._client.get(
            self.MYMEMORY_URL,
            params={"q": text, "langpair": f"{source}|{target}"},
        )
        response.raise_for_status()
        data: Any = response.json()
        translated = str((data.get("responseData") or {}).get("translatedText") or "")
        if not translated.strip():
            raise ValueError("MyMemory translation payload is empty")
        return translated.strip()


class OpenAITranslationService:
    _LANGUAGE_NAMES: Final[dict[str, str]] = {
        "en": "English",
        "es": "Spanish",
        "pt": "Portuguese (Brazil)",
        "pt-br": "Portuguese (Brazil)",
        "zh": "Mandarin Chinese (Simplified)",
        "zh-cn": "Mandarin Chinese (Simplified)",
        "zh-tw": "Mandarin Chinese (Traditional)",
        "ja": "Japanese",
        "hi": "Hindi",
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        source_lang: str = "zh",
        target_lang: str = "en",
    ) -> None:
        key = api_key or os.getenv("OPENAI_API_KEY")
        if not key:
            raise RuntimeError("OPENAI_API_KEY is required for translation.")
        self._client = AsyncOpenAI(api_key=key)
        primary_model = read_str_env("TRANSLATION_MODEL", model)
        fallback_model = read_str_env("TRANSLATION_FALLBACK_MODEL", "gpt-4.1-mini")
        self._models = [primary_model]
        if fallback_model not in self._models:
            self._models.append(fallback_model)
        self._active_model_index = 0
        self._max_completion_tokens = read_int_env("TRANSLATION_MAX_TOKENS", 160)
        self.source_lang = read_str_env("TRANSLATION_SOURCE_LANG", source_lang)
        self.target_lang = read_str_env("TRANSLATION_TARGET_LANG", target_lang)

    def set_language_pair(self, source_lang: str, target_lang: str) -> None:
        self.source_lang = source_lang
        self.target_lang = target_lang

    async def translate(
        self,
        text: str,
        source_lang: Optional[str] = None,
        target_lang: Optional[str] = None,
    ) -> TranslationResult:
        cleaned = _sanitize(text)
        if not cleaned:
            return TranslationResult("")
        source = self._language_name(source_lang or self.source_lang)
        target = self._language_name(target_lang or self.target_lang)
        system_prompt = (
            "You are a real-time subtitle translator.\n"
            f"Translate the {source} fragment into natural {target}.\n"
            "Keep names, numbers and units exactly. The fragment may be an incomplete sentence; "
            "translate it as-is without completing it.\n"
            "Never refuse or explain. Return only the translated text."
        )
        try:
            translated = await self._chat(cleaned, system_prompt)
        except Exception as exc:  # noqa: BLE001 - graceful fallback
            return TranslationResult("", fallback_reason=f"translation_failed: {exc}")
        if not translated:
            return TranslationResult("", fallback_reason="translation_empty")
        return TranslationResult(translated)

    async def aclose(self) -> None:
        await self._client.close()

    @classmethod
    def _language_name(cls, code: str) -> str:
        raw = (code or "").strip()
        return cls._LANGUAGE_NAMES.get(raw.lower(), raw or "English")

    async def _chat(self, user_prompt: str, system_prompt: str) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        last_exc: Optional[Exception] = None
        while self._active_model_index < len(self._models):
            model_name = self._models[self._active_model_index]
            try:
                response = await self._client.chat.completions.create(
                    model=model_name,
                    temperature=0.0,
                    messages=messages,
                    max_tokens=self._max_completion_tokens,
                )
                return _sanitize(response.choices[0].message.content or "")
            except APIStatusError as exc:
                last_exc = exc
                # Promote to the fallback model once and keep it for later requests.
                if exc.status_code in (400, 404):
                    self._active_model_index += 1
                    continue
                raise
        raise RuntimeError(f"Translation API failed with all configured models: {last_exc}") from last_exc


def create_translation_service() -> TranslationProvider:
    provider = read_str_env("TRANSLATION_PROVIDER", "google").lower()
    if provider == "openai":
        return OpenAITranslationService()
    if provider != "google":
        logging.warning("translation_provider_unknown provider=%s fallback=google", provider)
    return GoogleTranslationService()
