from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from matcycle.api.deps import Actor, lifecycle_http_error
from matcycle.domain.models import (
    BatchCreateRequest,
    BatchDetailRead,
    BatchDetailsUpdate,
    BatchOperationResult,
    ItemPickedRequest,
    PickupBatchRead,
    PickupItemRead,
)
from matcycle.domain.state_machine import BatchStatus
from matcycle.services.errors import LifecycleError
from matcycle.services.pickup_orchestrator import PickupOrchestrator

router = APIRouter()


def get_pickup_orchestrator() -> PickupOrchestrator:
    return PickupOrchestrator()


Service = Annotated[PickupOrchestrator, Depends(get_pickup_orchestrator)]


def _handle_pickup_error(exc: LifecycleError) -> None:
    raise lifecycle_http_error(exc) from exc


@router.post("", response_model=BatchOperationResult, status_code=status.HTTP_201_CREATED)
def create_batch(payload: BatchCreateRequest, actor: Actor, service: Service) -> BatchOperationResult:
    try:
        return service.create_batch(
            payload.cycle_ids,
            scheduled_date=payload.scheduled_date,
            assigned_driver=payload.assigned_driver,
            notes=payload.notes,
            created_by=actor,
        )
    except LifecycleError as exc:
        _handle_pickup_error(exc)
        raise


@router.get("", response_model=list[PickupBatchRead])
def list_batches(
    service: Service,
    status_filter: Annotated[list[BatchStatus] | None, Query(alias="status")] = None,
    active_only: bool = False,
) -> list[PickupBatchRead]:
    if active_only:
        rows = service.list_active_batches()
    else:
        rows = service.list_batches(status_filter or None)
    return [PickupBatchRead.model_validate(item) for item in rows]


@router.post("/items/{item_id}/picked", response_model=PickupItemRead)
def toggle_item_picked(item_id: str, payload: ItemPickedRequest, actor: Actor, service: Service) -> PickupItemRead:
    try:
        item = service.toggle_item_picked(item_id, payload.picked, notes=payload.notes, performed_by=actor)
        return PickupItemRead.model_validate(item)
    except LifecycleError as exc:
        _handle_pickup_error(exc)
        raise


@router.get("/{batch_id}", response_model=BatchDetailRead)
def get_batch(batch_id: str, service: Service) -> BatchDetailRead:
    detail = service.get_batch(batch_id)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pickup batch not found")
    return detail


@router.patch("/{batch_id}", response_model=PickupBatchRead)
def update_batch(batch_id: str, payload: BatchDetailsUpdate, actor: Actor, service: Service) -> PickupBatchRead:
    try:
        return PickupBatchRead.model_validate(service.update_batch(batch_id, payload, performed_by=actor))
    except LifecycleError as exc:
        _handle_pickup_error(exc)
        raise


@router.post("/{batch_id}/start", response_model=PickupBatchRead)
def start_batch(batch_id: str, actor: Actor, service: Service) -> PickupBatchRead:
    try:
        return PickupBatchRead.model_validate(service.start_batch(batch_id, performed_by=actor))
    except LifecycleError as exc:
        _handle_pickup_error(exc)
        raise


@router.post("/{batch_id}/complete", response_model=BatchOperationResult)
def complete_batch(batch_id: str, actor: Actor, service: Service) -> BatchOperationResult:
    try:
        return service.complete_batch(batch_id, performed_by=actor)
    except LifecycleError as exc:
        _handle_pickup_error(exc)
        raise


@router.delete("/{batch_id}", response_model=BatchOperationResult)
def cancel_batch(batch_id: str, actor: Actor, service: Service) -> BatchOperationResult:
    try:
        return service.cancel_batch(batch_id, performed_by=actor)
    except LifecycleError as exc:
        _handle_pickup_error(exc)
        raise
