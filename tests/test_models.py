"""Tests for table definitions."""

import pytest
from sqlalchemy import DateTime

from gastown.db.models import AGENT_EVENT_TABLES, TOWN_TABLES, Bead

TIMESTAMP_COLUMNS = [
    (table.name, column.name)
    for table in TOWN_TABLES + AGENT_EVENT_TABLES
    for column in table.columns
    if column.name.endswith("_at")
]


class TestTimestamps:
    """Timestamps are stored as naive UTC."""

    @pytest.mark.parametrize("table_name,column_name", TIMESTAMP_COLUMNS)
    def test_plain_datetime_column(self, table_name, column_name):
        tables = {table.name: table for table in TOWN_TABLES + AGENT_EVENT_TABLES}
        column_type = tables[table_name].columns[column_name].type
        assert type(column_type) is DateTime
        assert column_type.timezone is False

    async def test_rows_write_and_read_naive(self, town, sessions):
        """Inserts and updates accept naive timestamps."""
        bead = await town.create_bead(title="fix bug")
        await town.close_bead(bead.id)

        async with sessions() as session:
            stored = await session.get(Bead, bead.id)

        assert stored.created_at.tzinfo is None
        assert stored.closed_at is not None
        assert stored.closed_at.tzinfo is None
