"""
Database table creation script for the Identity Reconciliation API
This script tests the database connection and creates the contacts table.
Run it once after provisioning the database.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import func, select

from database import DatabaseManager, db_manager
from models import Contact

logger = logging.getLogger(__name__)


async def create_tables(manager: Optional[DatabaseManager] = None) -> bool:
    """
    Create all database tables defined in the models
    Returns False when the database cannot be reached or the schema fails
    """
    manager = manager or db_manager
    try:
        logger.info("Starting database table creation...")

        if not await manager.test_connection():
            logger.error("Database connection failed - cannot create tables")
            return False

        await manager.create_tables()

        async with manager.get_session() as session:
            count = await session.scalar(select(func.count()).select_from(Contact))
            logger.info(f"Contacts table accessible - current count: {count}")

        return True

    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")
        return False


async def _run() -> bool:
    try:
        return await create_tables()
    finally:
        await db_manager.close()


def main():
    logging.basicConfig(level=logging.INFO)
    logger.info("Identity Reconciliation API - Database Setup")

    success = asyncio.run(_run())

    if success:
        logger.info("Database setup completed successfully!")
        logger.info("You can now start the API server with: python main.py")
    else:
        logger.error("Database setup failed!")
        logger.error("Please check your database configuration and try again")

    return success


if __name__ == "__main__":
    main()
