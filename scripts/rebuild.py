"""
Rebuild the vector table from the catalog.

Usage:
    python scripts/rebuild.py [full|incremental]
"""
import asyncio
import sys
from pathlib import Path

# Setup path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from kbengine.config import get_settings
from kbengine.knowledge_base import KnowledgeBase
from kbengine.logging_config import configure_logging
from kbengine.observability import configure_observability, set_evaluation_source
from kbengine.schemas.ingest import RebuildMode


async def main():
    mode = RebuildMode(sys.argv[1]) if len(sys.argv) > 1 else RebuildMode.INCREMENTAL
    configure_logging(log_level=get_settings().log_level, json_format=get_settings().json_logs)
    configure_observability()
    set_evaluation_source("script")

    async with KnowledgeBase.from_settings() as kb:
        stream = kb.stream(lambda ch: kb.rebuild(mode, progress=ch))
        async for message in stream:
            print(f"[{message.percent:5.1f}%] {message.task_type.value}: {message.message}")
        try:
            await stream.result()
        except Exception as e:
            print(f"❌ Rebuild failed: {e}")
            sys.exit(1)

        report = kb.last_rebuild
        print(f"✅ {report.mode.value} rebuild: {len(report.updated)} updated, {len(report.kept)} kept, "
              f"{len(report.dropped)} dropped, {report.total_chunks} chunks")
        for error in report.failed:
            print(f"⚠️  {error.source}: [{error.kind}] {error.message}")


if __name__ == "__main__":
    asyncio.run(main())
