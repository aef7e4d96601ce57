"""Initialize the jobstream database schema.

Creates the companies, jobs, job_stream, job_applications and resumes tables.
Run this before starting the API server. Pass ``--drop`` for a clean start.
"""

import asyncio
import sys

from jobstream.config import settings
from jobstream.db import build_engine
from jobstream.models import Base


async def init_database(drop: bool = False):
    """Create all database tables."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")
    engine = build_engine(settings.db)

    try:
        async with engine.begin() as conn:
            if drop:
                await conn.run_sync(Base.metadata.drop_all)
                print("✓ Dropped existing tables")

            await conn.run_sync(Base.metadata.create_all)
            print("✓ Created all tables")
    finally:
        await engine.dispose()

    print("\n✅ Database initialization complete!")
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


async def main():
    """Main entry point."""
    try:
        await init_database(drop="--drop" in sys.argv[1:])
    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
