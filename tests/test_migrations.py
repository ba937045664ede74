from __future__ import annotations

from pathlib import Path

import pytest
from alembic import command
from sqlalchemy import create_engine, inspect

from matcycle.infra import db, migrate


def test_upgrade_head_creates_lifecycle_schema(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setattr(db, "DATABASE_URL", url)

    migrate.run_upgrade_head()

    engine = create_engine(url)
    try:
        inspector = inspect(engine)
        assert {"assets", "cycles", "pickup_batches", "pickup_items", "cycle_history", "events"} <= set(
            inspector.get_table_names()
        )
        cycle_indexes = {index["name"]: index for index in inspector.get_indexes("cycles")}
        assert cycle_indexes["uq_cycles_open_asset"]["unique"]
        assert "ix_cycles_pickup_batch_id" in cycle_indexes
        cycle_columns = {column["name"] for column in inspector.get_columns("cycles")}
        assert "pickup_batch_id" in cycle_columns
        history_columns = {column["name"] for column in inspector.get_columns("cycle_history")}
        assert {"metadata", "seq"} <= history_columns
        history_indexes = {index["name"]: index for index in inspector.get_indexes("cycle_history")}
        assert history_indexes["uq_cycle_history_cycle_seq"]["unique"]
    finally:
        engine.dispose()

    command.downgrade(migrate.build_config(), "base")
    engine = create_engine(url)
    try:
        assert "cycles" not in inspect(engine).get_table_names()
    finally:
        engine.dispose()
