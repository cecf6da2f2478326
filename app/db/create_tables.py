# app/db/create_tables.py
"""
Simple script to create database tables.
Run this once to set up the database schema:
    python -m app.db.create_tables
"""
import asyncio

from app.core.config import settings
from app.db.database import Database


async def create_tables():
    """Create all database tables."""
    database = Database(settings.async_database_url)
    await database.connect(retries=settings.QUEUE_CONNECT_RETRIES, timeout=settings.QUEUE_CONNECT_TIMEOUT)

    print("Creating database tables...")
    try:
        await database.create_tables()
    finally:
        await database.close()

    print("Database tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
