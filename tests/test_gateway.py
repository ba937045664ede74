from __future__ import annotations

import pytest
from sqlalchemy.engine import Engine

from matcycle.domain.filters import AssetFilter
from matcycle.domain.models import Asset
from matcycle.domain.state_machine import AssetStatus
from matcycle.infra.gateway import SqlGateway
from matcycle.services.errors import ConflictError, NotFoundError


def _asset(code: str, owner_id: str = "op-1", status: AssetStatus = AssetStatus.AVAILABLE) -> Asset:
    return Asset(code=code, owner_id=owner_id, status=status)


def test_create_find_and_count(sqlite_engine: Engine) -> None:
    gateway = SqlGateway()
    created = gateway.create_many([_asset("MAT-2345"), _asset("MAT-2346"), _asset("RUG-2345", owner_id="op-2")])
    assert len(created) == 3

    found = gateway.find_by_id(Asset, created[0].id)
    assert found is not None
    assert found.code == "MAT-2345"
    assert gateway.find_by_id(Asset, "missing") is None

    assert gateway.count(Asset) == 3
    assert gateway.count(Asset, AssetFilter(code_prefix="MAT")) == 2
    assert gateway.exists(Asset, AssetFilter(owner_id="op-2"))
    assert not gateway.exists(Asset, AssetFilter(owner_id="op-3"))


def test_duplicate_code_is_conflict(sqlite_engine: Engine) -> None:
    gateway = SqlGateway()
    gateway.create(_asset("MAT-2345"))
    with pytest.raises(ConflictError):
        gateway.create(_asset("MAT-2345"))
    assert gateway.count(Asset) == 1


def test_conditional_update_reports_observed_status(sqlite_engine: Engine) -> None:
    gateway = SqlGateway()
    asset = gateway.create(_asset("MAT-2345"))

    updated = gateway.update(
        Asset,
        asset.id,
        {"status": AssetStatus.ASSIGNED},
        expected={"status": AssetStatus.AVAILABLE},
    )
    assert updated.status == AssetStatus.ASSIGNED

    with pytest.raises(ConflictError) as exc_info:
        gateway.update(
            Asset,
            asset.id,
            {"status": AssetStatus.ASSIGNED},
            expected={"status": AssetStatus.AVAILABLE},
        )
    assert exc_info.value.observed == "assigned"
    assert exc_info.value.entity_id == asset.id

    with pytest.raises(NotFoundError):
        gateway.update(Asset, "missing", {"status": AssetStatus.PENDING})


def test_update_expected_accepts_a_set_of_values(sqlite_engine: Engine) -> None:
    gateway = SqlGateway()
    asset = gateway.create(_asset("MAT-2345", status=AssetStatus.PENDING))
    updated = gateway.update(
        Asset,
        asset.id,
        {"order_ref": "PO-7"},
        expected={"status": (AssetStatus.PENDING, AssetStatus.AVAILABLE)},
    )
    assert updated.order_ref == "PO-7"


def test_delete_and_delete_where(sqlite_engine: Engine) -> None:
    gateway = SqlGateway()
    first, second, third = gateway.create_many([_asset("MAT-2345"), _asset("MAT-2346"), _asset("RUG-2345")])

    gateway.delete(Asset, first.id)
    with pytest.raises(NotFoundError):
        gateway.delete(Asset, first.id)

    removed = gateway.delete_where(Asset, AssetFilter(code_prefix="MAT"))
    assert removed == 1
    remaining = gateway.find_all(Asset)
    assert [item.id for item in remaining] == [third.id]
    assert second.id not in {item.id for item in remaining}

    with pytest.raises(ValueError):
        gateway.delete_where(Asset, AssetFilter())
