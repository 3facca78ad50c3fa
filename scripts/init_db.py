#!/usr/bin/env python3
"""Initialize the database with tables (development; production uses Alembic)."""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from settlement.database import dispose_engine, get_engine
from settlement.models import Base


async def init_db():
    """Create all tables."""
    print("Creating database tables...")

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        print("✓ Tables created")

    await dispose_engine()
    print("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(init_db())
