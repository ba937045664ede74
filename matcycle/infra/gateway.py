from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, Protocol, TypeVar

import sqlalchemy as sa
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, col, select

from matcycle.domain.filters import FilterSpec
from matcycle.infra.db import get_engine
from matcycle.infra.logging import get_logger
from matcycle.services.errors import ConflictError, NotFoundError, UpstreamError

M = TypeVar("M", bound=SQLModel)

logger = get_logger(__name__)


class PersistenceGateway(Protocol):
    """Generic entity store the lifecycle services are written against.

    Every call is its own round trip; there is no transaction spanning calls.
    ``update`` with ``expected`` is a compare-and-set: the row is written only
    while each expected column still holds the given value (or one of the
    given values when a collection is passed).
    """

    def find_by_id(self, model: type[M], entity_id: str) -> M | None: ...

    def find_all(
        self,
        model: type[M],
        spec: FilterSpec | None = None,
        *,
        order_by: Sequence[Any] = (),
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[M]: ...

    def create(self, row: M) -> M: ...

    def create_many(self, rows: Sequence[M]) -> list[M]: ...

    def update(
        self,
        model: type[M],
        entity_id: str,
        fields: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> M: ...

    def delete(self, model: type[M], entity_id: str) -> None: ...

    def delete_where(self, model: type[M], spec: FilterSpec) -> int: ...

    def exists(self, model: type[M], spec: FilterSpec | None = None) -> bool: ...

    def count(self, model: type[M], spec: FilterSpec | None = None) -> int: ...


def entity_name(model: type[SQLModel]) -> str:
    return str(getattr(model, "__tablename__", model.__name__))


def _expected_clause(model: type[SQLModel], key: str, value: Any) -> Any:
    column = col(getattr(model, key))
    if isinstance(value, (set, frozenset, tuple, list)):
        return column.in_(list(value))
    if value is None:
        return column.is_(None)
    return column == value


class SqlGateway:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @contextmanager
    def _guard(self, operation: str, model: type[SQLModel], entity_id: str | None = None) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            raise ConflictError(
                f"{entity_name(model)} {operation} violates a uniqueness or integrity constraint",
                entity_type=entity_name(model),
                entity_id=entity_id,
                attempted=operation,
            ) from exc
        except SQLAlchemyError as exc:
            logger.warning(
                "gateway operation failed",
                operation=operation,
                entity_type=entity_name(model),
                entity_id=entity_id,
                error=str(exc),
            )
            raise UpstreamError(
                f"{entity_name(model)} {operation} failed",
                entity_type=entity_name(model),
                entity_id=entity_id,
                attempted=operation,
            ) from exc

    def find_by_id(self, model: type[M], entity_id: str) -> M | None:
        with self._guard("find_by_id", model, entity_id), self._session() as session:
            return session.get(model, entity_id)

    def find_all(
        self,
        model: type[M],
        spec: FilterSpec | None = None,
        *,
        order_by: Sequence[Any] = (),
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[M]:
        statement = select(model)
        if spec is not None:
            for clause in spec.clauses():
                statement = statement.where(clause)
        for ordering in order_by:
            statement = statement.order_by(ordering)
        if offset is not None:
            statement = statement.offset(offset)
        if limit is not None:
            statement = statement.limit(limit)
        with self._guard("find_all", model), self._session() as session:
            return list(session.exec(statement).all())

    def create(self, row: M) -> M:
        entity_id = getattr(row, "id", None)
        with self._guard("create", type(row), entity_id), self._session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def create_many(self, rows: Sequence[M]) -> list[M]:
        if not rows:
            return []
        model = type(rows[0])
        with self._guard("create_many", model), self._session() as session:
            session.add_all(rows)
            session.commit()
            for row in rows:
                session.refresh(row)
            return list(rows)

    def update(
        self,
        model: type[M],
        entity_id: str,
        fields: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> M:
        name = entity_name(model)
        statement = sa.update(model).where(col(getattr(model, "id")) == entity_id)
        for key, value in (expected or {}).items():
            statement = statement.where(_expected_clause(model, key, value))
        statement = statement.values(**dict(fields)).execution_options(synchronize_session=False)

        with self._guard("update", model, entity_id), self._session() as session:
            result = session.execute(statement)
            rowcount = int(getattr(result, "rowcount", 0) or 0)
            if rowcount == 0:
                session.rollback()
                current = session.get(model, entity_id)
                if current is None:
                    raise NotFoundError(f"{name} not found", entity_type=name, entity_id=entity_id)
                observed = {key: getattr(current, key) for key in (expected or {})}
                raise ConflictError(
                    f"{name} changed concurrently",
                    entity_type=name,
                    entity_id=entity_id,
                    attempted="update",
                    observed=str(observed.get("status", observed)),
                    detail={"expected": {key: _plain(value) for key, value in (expected or {}).items()}},
                )
            session.commit()
            row = session.get(model, entity_id, populate_existing=True)
            if row is None:
                raise NotFoundError(f"{name} not found", entity_type=name, entity_id=entity_id)
            return row

    def delete(self, model: type[M], entity_id: str) -> None:
        name = entity_name(model)
        with self._guard("delete", model, entity_id), self._session() as session:
            result = session.execute(sa.delete(model).where(col(getattr(model, "id")) == entity_id))
            if int(getattr(result, "rowcount", 0) or 0) == 0:
                session.rollback()
                raise NotFoundError(f"{name} not found", entity_type=name, entity_id=entity_id)
            session.commit()

    def delete_where(self, model: type[M], spec: FilterSpec) -> int:
        clauses = spec.clauses()
        if not clauses:
            raise ValueError("delete_where requires at least one filter clause")
        statement = sa.delete(model)
        for clause in clauses:
            statement = statement.where(clause)
        with self._guard("delete_where", model), self._session() as session:
            result = session.execute(statement)
            session.commit()
            return int(getattr(result, "rowcount", 0) or 0)

    def exists(self, model: type[M], spec: FilterSpec | None = None) -> bool:
        return self.count(model, spec) > 0

    def count(self, model: type[M], spec: FilterSpec | None = None) -> int:
        statement = select(func.count()).select_from(model)
        if spec is not None:
            for clause in spec.clauses():
                statement = statement.where(clause)
        with self._guard("count", model), self._session() as session:
            return int(session.exec(statement).one())


def _plain(value: Any) -> Any:
    if isinstance(value, (set, frozenset, tuple, list)):
        return sorted(str(item) for item in value)
    return value if value is None else str(value)
