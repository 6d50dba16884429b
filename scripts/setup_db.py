"""
Database initialization script for the dispatch core.

Usage:
    python scripts/setup_db.py [hospitals.json]

The optional JSON file holds a list of hospital profiles to load.
"""
import asyncio
import json
import sys
import logging
from pathlib import Path

from sqlalchemy import text

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def _seed_hospitals(session_factory, path: Path) -> int:
    from dispatch_core.db.sql_store import SqlCaseStore
    from dispatch_core.models.hospital import HospitalProfile

    store = SqlCaseStore(session_factory=session_factory)
    profiles = json.loads(path.read_text())
    for raw in profiles:
        await store.put_hospital(HospitalProfile(**raw))
    return len(profiles)


def setup_database(seed_file: str = None):
    """Initialize database with schema."""
    print("\n🗄️  Initializing Dispatch Core Database...")
    print("="*60)

    try:
        from dispatch_core.db.connection import init_db
        from dispatch_core.core.config import Config

        db_url = Config.DATABASE_URL
        print(f"📍 Database URL: {db_url}")

        engine, session_factory = init_db(db_url)
        print("✅ Database schema created successfully!")

        # Test connection
        with session_factory() as session:
            session.execute(text("SELECT 1"))
        print("✅ Database connection verified!")

        if seed_file:
            count = asyncio.run(_seed_hospitals(session_factory, Path(seed_file)))
            print(f"🏥 Loaded {count} hospital profiles from {seed_file}")

        # Show database info
        if db_url.startswith('sqlite'):
            db_file = db_url.replace('sqlite:///', '')
            db_path = Path(db_file).resolve()
            print(f"\n📊 SQLite Database: {db_path}")
            if db_path.exists():
                size = db_path.stat().st_size
                print(f"   Size: {size:,} bytes")

        engine.dispose()
        print("\n✅ Database ready!")
        print("="*60)

        return True

    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        print(f"\n❌ Database initialization failed!")
        return False


if __name__ == "__main__":
    success = setup_database(sys.argv[1] if len(sys.argv) > 1 else None)
    sys.exit(0 if success else 1)
