from fastapi import Request

from kbengine.knowledge_base import KnowledgeBase


def get_knowledge_base(request: Request) -> KnowledgeBase:
    """The engine instance created in the app lifespan."""
    return request.app.state.kb
