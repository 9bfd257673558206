"""
Index files, folders or URLs from the command line.

Usage:
    python scripts/run_ingestion.py <path-or-url> [<path-or-url> ...] [--tag TAG] [--collection ID]
"""
import argparse
import asyncio
import sys
import uuid
from pathlib import Path

# Load .env before opik reads its environment variables
from dotenv import load_dotenv
load_dotenv()

# Setup path so we can import kbengine
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from kbengine.config import get_settings
from kbengine.knowledge_base import KnowledgeBase
from kbengine.logging_config import configure_logging, get_logger, bind_contextvars, clear_contextvars
from kbengine.observability import configure_observability, track, Phase, set_evaluation_source, set_trace_metadata
from kbengine.paths import is_url

configure_observability()

# Initialize structured logging
configure_logging(
    log_level=get_settings().log_level,
    json_format=get_settings().json_logs,
    log_file="ingestion.log"
)
log = get_logger(__name__)


async def print_progress(stream) -> None:
    async for message in stream:
        print(f"  [{message.percent:5.1f}%] {message.message}")


@track(name="ingestion_run", phase=Phase.INGESTION, tags=["execution:manual"])
async def ingest(targets, tags, collection_id, run_id: str):
    """Ingest folders one by one, everything else as one batch."""
    set_evaluation_source("script")
    set_trace_metadata({"ingestion_run_id": run_id})

    folders = [t for t in targets if not is_url(t) and Path(t).is_dir()]
    sources = [t for t in targets if t not in folders]

    async with KnowledgeBase.from_settings() as kb:
        for folder in folders:
            print(f"Importing folder {folder}")
            stream = kb.stream(lambda ch, f=folder: kb.import_folder(f, collection_id=collection_id, progress=ch))
            await print_progress(stream)
            report(await stream.result())

        if sources:
            print(f"Ingesting {len(sources)} source(s)")
            stream = kb.stream(lambda ch: kb.ingest_sources(sources, tags=tags, collection_id=collection_id,
                                                            progress=ch))
            await print_progress(stream)
            report(await stream.result())


def report(result) -> None:
    print(f"✅ Added {len(result.added)} source(s), {result.count} chunk(s)")
    for error in result.errors:
        print(f"❌ {error.source}: [{error.kind}] {error.message}")


async def main():
    parser = argparse.ArgumentParser(description="Index files, folders or URLs")
    parser.add_argument("targets", nargs="+", help="File paths, folder paths or http(s) URLs")
    parser.add_argument("--tag", action="append", default=[], dest="tags")
    parser.add_argument("--collection", default=None, dest="collection_id")
    args = parser.parse_args()

    # Generate a unique run ID for correlation
    run_id = str(uuid.uuid4())[:8]
    bind_contextvars(ingestion_run_id=run_id)
    await ingest(args.targets, args.tags, args.collection_id, run_id)
    clear_contextvars()


if __name__ == "__main__":
    asyncio.run(main())
