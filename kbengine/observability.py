"""
Opik tracing behind a small vendor-neutral surface.

Engine code only uses ``track`` and ``Phase``; hosts call
``configure_observability`` once and tag their entry point with
``set_evaluation_source`` so traces can be split by caller (rest, mcp, script).
"""
import contextvars
import functools
import inspect
import os
from enum import Enum
from typing import Any, List, Optional

import opik

from kbengine.logging_config import get_logger

log = get_logger(__name__)

_source_context = contextvars.ContextVar("trace_source", default=None)


class Phase(Enum):
    """Engine phases, emitted as ``phase:<value>`` tags."""
    INGESTION = "ingestion"
    RETRIEVAL = "retrieval"
    REBUILD = "rebuild"
    CATALOG = "catalog"
    TRANSLATION = "translation"


def configure_observability() -> None:
    """Point opik at a cloud workspace when an API key is set, otherwise at a local server."""
    from kbengine.config import get_settings
    settings = get_settings().opik

    if settings.track_disable:
        os.environ["OPIK_TRACK_DISABLE"] = "true"
        log.info("observability_disabled")
        return

    os.environ["OPIK_PROJECT_NAME"] = settings.project_name
    if settings.api_key:
        os.environ["OPIK_API_KEY"] = settings.api_key
    if settings.workspace:
        os.environ["OPIK_WORKSPACE"] = settings.workspace
    opik.configure(use_local=not settings.api_key)
    log.info("observability_configured", provider="opik", project=settings.project_name,
             local=not settings.api_key)


def _source_tags() -> List[str]:
    source = _source_context.get()
    return [f"source:{source}"] if source else []


def set_evaluation_source(source: str) -> None:
    """Tag the current flow (and its open trace, if any) with the calling host."""
    _source_context.set(source)
    try:
        opik.opik_context.update_current_trace(tags=_source_tags())
    except Exception:
        # Called outside a trace
        pass


def set_trace_metadata(metadata: dict) -> None:
    try:
        opik.opik_context.update_current_trace(metadata=metadata)
    except Exception:
        pass


def track(name: Optional[str] = None, phase: Optional[Phase] = None, tags: Optional[List[str]] = None):
    """
    Trace a sync or async callable as an opik span.

    Args:
        name: Span name. Defaults to the function name.
        phase: Added as a ``phase:<value>`` tag.
        tags: Extra static tags.
    """
    static_tags = list(tags or [])
    if phase:
        static_tags.append(f"phase:{phase.value}")

    def decorator(func):
        def tag_span() -> None:
            source_tags = _source_tags()
            if source_tags:
                try:
                    opik.opik_context.update_current_span(tags=source_tags)
                except Exception:
                    pass

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def wrapper(*args, **kwargs):
                tag_span()
                return await func(*args, **kwargs)
        else:
            @functools.wraps(func)
            def wrapper(*args, **kwargs):
                tag_span()
                return func(*args, **kwargs)

        return opik.track(name=name, tags=static_tags)(wrapper)
    return decorator


def get_llm_callback_handler(phase: Optional[Phase] = None) -> Any:
    """LangChain callback that reports chat model calls to opik."""
    from opik.integrations.langchain import OpikTracer

    handler_tags = _source_tags()
    if phase:
        handler_tags.append(f"phase:{phase.value}")
    return OpikTracer(tags=handler_tags)
