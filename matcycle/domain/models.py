from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, CheckConstraint, Column, Index, String, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from matcycle.domain.state_machine import AssetStatus, BatchStatus, CycleStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _status_column(default: str) -> Any:
    return Field(
        default=default,
        sa_column=Column(String(30), nullable=False, index=True, default=default),
    )


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Asset(SQLModel, table=True):
    __tablename__ = "assets"
    __table_args__ = (
        UniqueConstraint("code", name="uq_assets_code"),
        Index("ix_assets_owner_status", "owner_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    code: str = Field(max_length=40, index=True)
    owner_id: str = Field(index=True)
    status: AssetStatus = _status_column(AssetStatus.AVAILABLE)
    order_ref: str | None = Field(default=None, index=True)
    received_at: datetime | None = None
    last_reset_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class Cycle(SQLModel, table=True):
    __tablename__ = "cycles"
    __table_args__ = (
        Index(
            "uq_cycles_open_asset",
            "asset_id",
            unique=True,
            postgresql_where=text("status <> 'completed'"),
            sqlite_where=text("status <> 'completed'"),
        ),
        Index("ix_cycles_owner_status", "owner_id", "status"),
        Index("ix_cycles_company_status", "company_id", "status"),
        CheckConstraint("extensions_count >= 0", name="ck_cycles_extensions_non_negative"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    asset_id: str = Field(foreign_key="assets.id", index=True)
    owner_id: str = Field(index=True)
    status: CycleStatus = _status_column(CycleStatus.CLEAN)
    mat_type: str | None = None
    company_id: str | None = Field(default=None, index=True)
    contact_id: str | None = None
    test_start_at: datetime | None = Field(default=None, index=True)
    test_end_at: datetime | None = None
    pickup_requested_at: datetime | None = None
    driver_pickup_at: datetime | None = None
    contract_signed: bool = Field(default=False)
    contract_signed_at: datetime | None = None
    contract_frequency: str | None = None
    extensions_count: int = Field(default=0)
    pickup_batch_id: str | None = Field(default=None, index=True)
    location_lat: float | None = None
    location_lng: float | None = None
    location_address: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class PickupBatch(SQLModel, table=True):
    __tablename__ = "pickup_batches"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    status: BatchStatus = _status_column(BatchStatus.PENDING)
    scheduled_date: date | None = None
    assigned_driver: str | None = Field(default=None, index=True)
    notes: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class PickupItem(SQLModel, table=True):
    __tablename__ = "pickup_items"
    __table_args__ = (UniqueConstraint("batch_id", "cycle_id", name="uq_pickup_items_batch_cycle"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    batch_id: str = Field(foreign_key="pickup_batches.id", index=True)
    cycle_id: str = Field(foreign_key="cycles.id", index=True)
    picked_up: bool = Field(default=False)
    picked_up_at: datetime | None = None
    notes: str | None = None


class HistoryEvent(SQLModel, table=True):
    __tablename__ = "cycle_history"
    __table_args__ = (
        Index("ix_cycle_history_cycle_at", "cycle_id", "at"),
        Index("uq_cycle_history_cycle_seq", "cycle_id", "seq", unique=True),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    cycle_id: str = Field(foreign_key="cycles.id", index=True)
    # position within the cycle, 1-based
    seq: int = Field(default=0)
    action: str = Field(max_length=50, index=True)
    old_status: str | None = None
    new_status: str
    # "metadata" is reserved on declarative models, so the attribute is named detail.
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False),
    )
    performed_by: str = Field(index=True)
    at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    entity_type: str
    entity_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any] = PydanticField(default_factory=dict)


class GeoPoint(BaseModel):
    lat: float = PydanticField(ge=-90, le=90)
    lng: float = PydanticField(ge=-180, le=180)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class AssetAllocateRequest(BaseModel):
    owner_id: str
    prefix: str = PydanticField(min_length=1, max_length=10)
    count: int = PydanticField(ge=1)
    pending: bool = False
    order_ref: str | None = None


class AssetRead(ORMReadModel):
    id: str
    code: str
    owner_id: str
    status: AssetStatus
    order_ref: str | None
    received_at: datetime | None
    last_reset_at: datetime | None
    created_at: datetime
    updated_at: datetime


class AssetStatsRead(BaseModel):
    owner_id: str
    available: int
    active: int
    pending: int
    total: int


class CycleOpenRequest(BaseModel):
    asset_id: str
    mat_type: str | None = None
    notes: str | None = None


class TrialAssignRequest(BaseModel):
    company_id: str
    contact_id: str | None = None
    start_at: datetime | None = None
    location: GeoPoint | None = None
    notes: str | None = None


class SignContractRequest(BaseModel):
    frequency: str = PydanticField(min_length=1, max_length=50)


class ExtendTrialRequest(BaseModel):
    days: int = PydanticField(default=7, ge=1, le=365)


class MarkContractRequest(BaseModel):
    frequency: str | None = PydanticField(default=None, max_length=50)


class CycleDetailsUpdate(BaseModel):
    """Partial edit of non-status cycle fields.

    Only fields present in ``model_fields_set`` are written; an explicit
    ``None`` clears the column, an omitted field leaves it unchanged.
    """

    notes: str | None = None
    location: GeoPoint | None = None
    location_address: str | None = None
    test_start_at: datetime | None = None
    contact_id: str | None = None
    mat_type: str | None = None


class CycleRead(ORMReadModel):
    id: str
    asset_id: str
    owner_id: str
    status: CycleStatus
    mat_type: str | None
    company_id: str | None
    contact_id: str | None
    test_start_at: datetime | None
    test_end_at: datetime | None
    pickup_requested_at: datetime | None
    driver_pickup_at: datetime | None
    contract_signed: bool
    contract_signed_at: datetime | None
    contract_frequency: str | None
    extensions_count: int
    pickup_batch_id: str | None
    location_lat: float | None
    location_lng: float | None
    location_address: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class HistoryEventRead(ORMReadModel):
    id: str
    cycle_id: str
    seq: int
    action: str
    old_status: str | None
    new_status: str
    metadata: dict[str, Any] = PydanticField(validation_alias=AliasChoices("detail", "metadata"))
    performed_by: str
    at: datetime


class TimelineEntryRead(BaseModel):
    status: str
    entered_at: datetime
    left_at: datetime | None
    entered_by: str
    action: str


class BatchCreateRequest(BaseModel):
    cycle_ids: list[str] = PydanticField(min_length=1)
    scheduled_date: date | None = None
    assigned_driver: str | None = None
    notes: str | None = None


class BatchDetailsUpdate(BaseModel):
    """Partial edit of batch scheduling fields, same unset semantics as CycleDetailsUpdate."""

    scheduled_date: date | None = None
    assigned_driver: str | None = None
    notes: str | None = None


class ItemPickedRequest(BaseModel):
    picked: bool
    notes: str | None = None


class PickupBatchRead(ORMReadModel):
    id: str
    status: BatchStatus
    scheduled_date: date | None
    assigned_driver: str | None
    notes: str | None
    created_by: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class PickupItemRead(ORMReadModel):
    id: str
    batch_id: str
    cycle_id: str
    picked_up: bool
    picked_up_at: datetime | None
    notes: str | None


class BatchDetailRead(BaseModel):
    batch: PickupBatchRead
    items: list[PickupItemRead]


class CycleFailure(BaseModel):
    cycle_id: str
    error: str
    detail: dict[str, Any] = PydanticField(default_factory=dict)


class BatchOperationResult(BaseModel):
    batch_id: str
    status: BatchStatus | None
    succeeded: list[str] = PydanticField(default_factory=list)
    failed: list[CycleFailure] = PydanticField(default_factory=list)
    skipped: list[str] = PydanticField(default_factory=list)
    noop: bool = False
    partially_reverted: bool = False
    deleted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


class StatusCountsRead(BaseModel):
    clean: int = 0
    on_test: int = 0
    dirty: int = 0
    waiting_driver: int = 0
    signed: int = 0
    total: int = 0


class CompanyCountsRead(BaseModel):
    company_id: str
    on_test: int
    signed: int
    total: int


class OperatorCountsRead(BaseModel):
    owner_id: str
    clean: int
    on_test: int
    dirty: int
    waiting_driver: int
    total: int


class OverdueCycleRead(BaseModel):
    cycle_id: str
    asset_id: str
    owner_id: str
    company_id: str | None
    test_start_at: datetime
    days_on_test: int


class ExpiringTrialRead(BaseModel):
    cycle_id: str
    asset_id: str
    owner_id: str
    company_id: str | None
    deadline: datetime
    days_remaining: int


class TurnaroundRead(BaseModel):
    completed_cycles: int
    average_days_to_pickup: float | None
