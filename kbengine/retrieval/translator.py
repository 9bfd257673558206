"""
Machine translation of queries for cross-language retrieval.

Best-effort: any failure, timeout or no-op translation returns ``None`` and
the caller searches with the original query only.
"""
import asyncio
from typing import Callable, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from kbengine.cache import TTLCache
from kbengine.exceptions import LLMError, LLMRateLimitError, LLMTimeoutError
from kbengine.llm_factory import get_llm, parse_llm_content
from kbengine.logging_config import get_logger
from kbengine.observability import track, Phase, get_llm_callback_handler

log = get_logger(__name__)

LANGUAGE_NAMES = {
    "en": "English",
    "zh": "Simplified Chinese",
    "ja": "Japanese",
    "ko": "Korean",
}

# Shorter than this share of the query means the model dropped content
_MIN_LENGTH_RATIO = 0.3

_SYSTEM_PROMPT = (
    "You translate search queries. Reply with the translation only: no quotes, "
    "no explanations, no alternatives. Keep names, acronyms and code unchanged."
)


def translation_cache_key(query: str, target_language: str) -> str:
    return f"{target_language}:{query.lower().strip()}"


def _classify(error: Exception) -> LLMError:
    message = str(error)
    lowered = message.lower()
    if "rate limit" in lowered or "429" in lowered or "quota" in lowered:
        return LLMRateLimitError(message)
    if "timed out" in lowered or "timeout" in lowered:
        return LLMTimeoutError(message)
    return LLMError(message)


class QueryTranslator:
    def __init__(
        self,
        cache: TTLCache,
        timeout: float = 10.0,
        enabled: bool = True,
        llm_factory: Callable[[], BaseChatModel] = get_llm,
    ):
        self.cache = cache
        self.timeout = timeout
        self.enabled = enabled
        self._llm_factory = llm_factory

    @track(name="translate_query", phase=Phase.TRANSLATION)
    async def translate(self, query: str, target_language: str) -> Optional[str]:
        """Translated query, or ``None`` when translation is off, failed, or changed nothing."""
        if not self.enabled:
            return None

        key = translation_cache_key(query, target_language)
        cached = self.cache.get(key)
        if cached is not None:
            log.debug("translation_cache_hit", target=target_language)
            return cached

        try:
            translated = await asyncio.wait_for(self._invoke(query, target_language), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning("query_translation_timeout", target=target_language, timeout=self.timeout)
            return None
        except Exception as e:
            log.warning("query_translation_failed", target=target_language, error=str(e),
                        error_type=type(e).__name__)
            return None

        translated = translated.strip().strip('"').strip()
        if not translated or translated.lower() == query.lower().strip():
            log.info("query_translation_noop", target=target_language)
            return None
        if len(translated) < len(query.strip()) * _MIN_LENGTH_RATIO:
            log.info("query_translation_truncated", target=target_language,
                     query_length=len(query), translated_length=len(translated))
            return None

        self.cache.set(key, translated)
        log.info("query_translated", target=target_language)
        return translated

    @retry(
        retry=retry_if_exception_type(LLMRateLimitError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True,
    )
    async def _invoke(self, query: str, target_language: str) -> str:
        language = LANGUAGE_NAMES.get(target_language, target_language)
        messages = [
            SystemMessage(content=_SYSTEM_PROMPT),
            HumanMessage(content=f"Translate into {language}:\n{query}"),
        ]
        try:
            llm = self._llm_factory()
            response = await llm.ainvoke(
                messages,
                config={"callbacks": [get_llm_callback_handler(phase=Phase.TRANSLATION)]},
            )
        except Exception as e:
            raise _classify(e) from e
        return parse_llm_content(response.content)
