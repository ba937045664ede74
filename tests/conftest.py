from __future__ import annotations

from collections.abc import Generator, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from matcycle.infra import db
from matcycle.infra.gateway import M, SqlGateway
from matcycle.services.errors import UpstreamError


@pytest.fixture()
def sqlite_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "matcycle_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


class StepClock:
    """Deterministic clock that moves forward one hour per reading."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(hours=1)) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value


class FailingGateway(SqlGateway):
    """SqlGateway with storage faults injected on chosen calls."""

    def __init__(self) -> None:
        self.failing_bulk_models: set[type] = set()
        self.failing_create_models: set[type] = set()
        # entity id -> number of upcoming updates that fail; negative means always
        self.failing_updates: dict[str, int] = {}

    def create(self, row: M) -> M:
        if type(row) in self.failing_create_models:
            raise UpstreamError("injected insert failure", attempted="create")
        return super().create(row)

    def create_many(self, rows: Sequence[M]) -> list[M]:
        if rows and type(rows[0]) in self.failing_bulk_models:
            raise UpstreamError("injected bulk insert failure", attempted="create_many")
        return super().create_many(rows)

    def update(self, model: type[M], entity_id: str, fields: Any, *, expected: Any = None) -> M:
        remaining = self.failing_updates.get(entity_id, 0)
        if remaining != 0:
            self.failing_updates[entity_id] = remaining - 1 if remaining > 0 else remaining
            raise UpstreamError("injected update failure", entity_id=entity_id, attempted="update")
        return super().update(model, entity_id, fields, expected=expected)


@pytest.fixture()
def clock() -> StepClock:
    return StepClock()


@pytest.fixture()
def failing_gateway(sqlite_engine: Engine) -> FailingGateway:
    return FailingGateway()
