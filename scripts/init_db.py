import asyncio
import sys
from pathlib import Path

# Add project root to python path to allow imports
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from kbengine.db.db_manager import database_for


async def main():
    print("Initializing catalog database...")
    db = database_for()
    try:
        await db.init_db()
        print("✅ Tables created successfully!")
    except Exception as e:
        print(f"❌ Failed: {e}")
    finally:
        await db.dispose()

if __name__ == "__main__":
    asyncio.run(main())
