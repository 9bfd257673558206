from kbengine.api.routers.collections import router as collections_router
from kbengine.api.routers.maintenance import router as maintenance_router
from kbengine.api.routers.search import router as search_router
from kbengine.api.routers.sources import router as sources_router

__all__ = ["collections_router", "maintenance_router", "search_router", "sources_router"]
