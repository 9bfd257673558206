import asyncio
import sys
from pathlib import Path

# Setup path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from kbengine.config import get_settings
from kbengine.knowledge_base import KnowledgeBase


async def cleanup():
    kb = KnowledgeBase.from_settings(get_settings())

    print("Dropping vector table...")
    await kb.table.reset()
    print("Vector table dropped.")

    print("Dropping and re-creating catalog tables...")
    await kb.db.reset_db()
    await kb.db.dispose()
    print("DB Reset Complete.")

if __name__ == "__main__":
    asyncio.run(cleanup())
