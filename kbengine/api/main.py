"""
FastAPI application for the knowledge-base engine.
"""
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from kbengine.api.dependencies import get_knowledge_base
from kbengine.api.exception_handlers import knowledge_base_error_handler
from kbengine.api.routers import collections_router, maintenance_router, search_router, sources_router
from kbengine.config import get_settings
from kbengine.exceptions import KnowledgeBaseError
from kbengine.knowledge_base import KnowledgeBase
from kbengine.logging_config import configure_logging, get_logger
from kbengine.observability import configure_observability
from kbengine.schemas.catalog import KnowledgeBaseSnapshot

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: build the engine on startup, dispose it on shutdown."""
    settings = get_settings()
    configure_logging(log_level=settings.log_level, json_format=settings.json_logs)
    configure_observability()
    log.info("api_startup")

    kb = await KnowledgeBase.from_settings(settings).open()
    app.state.kb = kb
    from kbengine.warmup import warmup_models
    await warmup_models(kb)
    yield
    await kb.close()
    log.info("api_shutdown")


app = FastAPI(
    title="Knowledge Base Engine API",
    description="Local knowledge-base ingestion and cross-language retrieval",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sources_router)
app.include_router(search_router)
app.include_router(collections_router)
app.include_router(maintenance_router)

# Exception handlers
app.add_exception_handler(KnowledgeBaseError, knowledge_base_error_handler)


@app.get("/snapshot", response_model=KnowledgeBaseSnapshot)
async def snapshot(kb: KnowledgeBase = Depends(get_knowledge_base)) -> KnowledgeBaseSnapshot:
    """Indexed sources, collections and tag counts."""
    return await kb.snapshot()


@app.get("/health")
async def health_check(kb: KnowledgeBase = Depends(get_knowledge_base)):
    """Health check with dependency verification."""
    checks = {"api": "healthy"}

    # Check catalog database
    try:
        async with kb.db.get_session() as session:
            await session.execute(text("SELECT 1"))
        checks["catalog"] = "healthy"
    except Exception as e:
        checks["catalog"] = f"unhealthy: {str(e)}"

    # Check vector table
    if kb.state.needs_rebuild:
        checks["vector_table"] = "unhealthy: rebuild required"
    else:
        checks["vector_table"] = "healthy"

    # Overall status
    all_healthy = all(v == "healthy" for v in checks.values())
    status_code = 200 if all_healthy else 503

    return JSONResponse(
        content={"status": "healthy" if all_healthy else "degraded", "checks": checks},
        status_code=status_code
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("kbengine.api.main:app", host="127.0.0.1", port=8000)
