"""
Script to create all database tables.

Creates the dispatch, ledger and webhook tables directly from the models.
Use for local development; deployments run the Alembic migrations.
"""
import asyncio
import sys
from msgrelay.database import engine
from msgrelay.logging_config import get_logger
from msgrelay.models.base import Base
# Import all models to register them with Base
from msgrelay.models.delivery import DeliveryAttempt  # noqa: F401
from msgrelay.models.job import DispatchJob  # noqa: F401
from msgrelay.models.platform import PlatformConfig  # noqa: F401
from msgrelay.models.webhook import Webhook, WebhookDelivery  # noqa: F401

log = get_logger(component="create_tables")


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("tables_created", tables=sorted(Base.metadata.tables))


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    log.info("tables_dropped")


async def main(drop: bool = False):
    """Main entry point; pass --drop to recreate from scratch."""
    if drop:
        await drop_all_tables()
    await create_all_tables()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main(drop="--drop" in sys.argv))
