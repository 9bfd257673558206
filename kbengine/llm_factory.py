from functools import lru_cache
from typing import Any

from langchain_core.language_models import BaseChatModel

from kbengine.config import get_settings, LLMProvider
from kbengine.logging_config import get_logger

log = get_logger(__name__)


@lru_cache
def get_llm() -> BaseChatModel:
    """
    Factory that returns the configured chat model used for query translation.
    Supports: OpenAI (or an OpenAI-compatible base_url), Google Gemini.
    """
    settings = get_settings()
    llm_context = settings.llm
    timeout = settings.timeout.llm_seconds

    try:
        if llm_context.provider == LLMProvider.OPENAI:
            from langchain_openai import ChatOpenAI
            log.info("llm_initialized", provider=llm_context.provider.value, model=llm_context.model)
            return ChatOpenAI(
                model=llm_context.model,
                api_key=llm_context.api_key or "not-needed",
                base_url=llm_context.base_url,
                temperature=0,
                request_timeout=timeout
            )

        elif llm_context.provider == LLMProvider.GEMINI:
            from langchain_google_genai import ChatGoogleGenerativeAI
            log.info("llm_initialized", provider=llm_context.provider.value, model=llm_context.model)
            return ChatGoogleGenerativeAI(
                model=llm_context.model,
                google_api_key=llm_context.api_key,
                temperature=0,
                timeout=timeout,
            )

        else:
            raise ValueError(f"Unsupported LLM provider: {llm_context.provider}")

    except Exception as e:
        log.error("llm_init_failed", provider=llm_context.provider.value, error=str(e))
        raise


def parse_llm_content(content: Any) -> str:
    """
    Parse LLM content, handling provider-specific quirks (e.g. Gemini content block lists).
    """
    if isinstance(content, list):
        try:
            text_blocks = [block['text'] for block in content if isinstance(block, dict) and block.get('type') == 'text']
            return " ".join(text_blocks)
        except (KeyError, AttributeError, TypeError):
            log.warning("llm_content_structure_unexpected", content_type=type(content).__name__)
            return str(content)

    return str(content)
