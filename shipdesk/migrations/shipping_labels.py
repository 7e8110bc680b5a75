"""
Database migration for shipping labels

Creates the shipping label tables from the SQLAlchemy models:
- shipping_settings: singleton ship-from address
- shipping_box_presets: reusable parcel sizes
- order_shipments: parcels, label state and the purchase / email claims
- order_rate_quotes: signature-keyed rate cache

Idempotent, safe to run on every startup.
"""
import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from shipdesk.core.database import Base
import shipdesk.models  # noqa: F401  registers every table on Base.metadata

logger = logging.getLogger(__name__)

# Columns added after the first release; create_all does not alter existing tables
LATE_COLUMNS = [
    ("order_shipments", "purchase_claimed_at", "TIMESTAMP WITH TIME ZONE"),
    ("order_shipments", "tracking_email_sent_at", "TIMESTAMP WITH TIME ZONE"),
]


async def migrate_shipping_label_tables(engine: AsyncEngine) -> None:
    logger.info("Starting shipping label tables migration...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Created/verified shipping label tables")

    if engine.dialect.name != "postgresql":
        return

    for table, column, ddl_type in LATE_COLUMNS:
        try:
            async with engine.begin() as conn:
                await conn.execute(text(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column} {ddl_type}"))
        except Exception as e:
            logger.warning(f"Could not add {table}.{column}: {e}")

    logger.info("Shipping label tables migration complete!")


async def run_migration():
    """Run the migration using the app's database engine."""
    from shipdesk.core.database import engine

    await migrate_shipping_label_tables(engine)


if __name__ == "__main__":
    asyncio.run(run_migration())
