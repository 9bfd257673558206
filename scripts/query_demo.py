"""Demo script for testing retrieval queries."""
import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from kbengine.config import get_settings
from kbengine.knowledge_base import KnowledgeBase
from kbengine.logging_config import configure_logging
from kbengine.observability import set_evaluation_source


async def main():
    """Run one query through the full retrieval pipeline."""
    parser = argparse.ArgumentParser(description="Search the knowledge base")
    parser.add_argument("query")
    parser.add_argument("-k", type=int, default=None)
    parser.add_argument("--source", action="append", dest="sources", help="Restrict to this file or URL")
    args = parser.parse_args()

    configure_logging(log_level=get_settings().log_level)
    set_evaluation_source("script")

    print(f"Query: {args.query}")
    print("-" * 60)
    async with KnowledgeBase.from_settings() as kb:
        results = await kb.search(args.query, k=args.k, sources=args.sources)

    print(f"Results found: {len(results)}")
    print()
    for i, r in enumerate(results, 1):
        page = f" (page {r.page})" if r.page else ""
        print(f"{i}. Score: {r.score:.4f}")
        print(f"   File: {r.file_name}{page}")
        print(f"   Content: {r.content[:80]}...")
        print()


if __name__ == "__main__":
    asyncio.run(main())
