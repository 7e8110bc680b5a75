"""
Tests for the shipping label table migration.
"""
import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from shipdesk.migrations.shipping_labels import migrate_shipping_label_tables


class TestMigration:
    @pytest.mark.asyncio
    async def test_creates_tables_and_is_idempotent(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'migrate.db'}", poolclass=NullPool)
        try:
            await migrate_shipping_label_tables(engine)
            await migrate_shipping_label_tables(engine)

            async with engine.connect() as conn:
                tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
                columns = await conn.run_sync(
                    lambda sync_conn: {col["name"] for col in inspect(sync_conn).get_columns("order_shipments")}
                )
        finally:
            await engine.dispose()

        assert {"shipping_settings", "shipping_box_presets", "order_shipments", "order_rate_quotes"} <= set(tables)
        assert {"purchase_claimed_at", "tracking_email_sent_at", "quote_selected_id"} <= columns
