"""
Script to create the webhook engine tables.

Creates every table defined in webhook_engine.models.webhook.
Run this after starting PostgreSQL with Docker, or use the Alembic migration.
"""
import asyncio
import sys

from webhook_engine.database import engine
from webhook_engine.models.webhook import Base


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main(drop: bool = False):
    """Main entry point."""
    if drop:
        print("Dropping database tables...")
        await drop_all_tables()
    print("Creating database tables...")
    await create_all_tables()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main(drop="--drop" in sys.argv))
