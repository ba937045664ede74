from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from matcycle.api.deps import Actor, lifecycle_http_error
from matcycle.domain.filters import CycleFilter
from matcycle.domain.models import (
    CycleDetailsUpdate,
    CycleOpenRequest,
    CycleRead,
    ExtendTrialRequest,
    HistoryEventRead,
    MarkContractRequest,
    SignContractRequest,
    TimelineEntryRead,
    TrialAssignRequest,
)
from matcycle.domain.state_machine import CycleStatus
from matcycle.services.audit_trail import AuditTrail
from matcycle.services.cycle_manager import CycleManager
from matcycle.services.errors import LifecycleError

router = APIRouter()


def get_cycle_manager() -> CycleManager:
    return CycleManager()


def get_audit_trail() -> AuditTrail:
    return AuditTrail()


Service = Annotated[CycleManager, Depends(get_cycle_manager)]
Audit = Annotated[AuditTrail, Depends(get_audit_trail)]


def _handle_cycle_error(exc: LifecycleError) -> None:
    raise lifecycle_http_error(exc) from exc


@router.post("", response_model=CycleRead, status_code=status.HTTP_201_CREATED)
def open_cycle(payload: CycleOpenRequest, actor: Actor, service: Service) -> CycleRead:
    try:
        cycle = service.open_cycle(payload.asset_id, actor, mat_type=payload.mat_type, notes=payload.notes)
        return CycleRead.model_validate(cycle)
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.get("", response_model=list[CycleRead])
def list_cycles(
    service: Service,
    owner_id: str | None = None,
    company_id: str | None = None,
    asset_id: str | None = None,
    status_filter: Annotated[list[CycleStatus] | None, Query(alias="status")] = None,
    active_only: bool = False,
    limit: Annotated[int, Query(ge=1, le=1000)] = 200,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[CycleRead]:
    spec = CycleFilter(
        owner_id=owner_id,
        company_id=company_id,
        asset_id=asset_id,
        statuses=None if not status_filter else tuple(status_filter),
        exclude_statuses=(CycleStatus.COMPLETED,) if active_only else None,
    )
    rows = service.list_cycles(spec, limit=limit, offset=offset)
    return [CycleRead.model_validate(item) for item in rows]


@router.get("/{cycle_id}", response_model=CycleRead)
def get_cycle(cycle_id: str, service: Service) -> CycleRead:
    cycle = service.get_cycle(cycle_id)
    if cycle is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="cycle not found")
    return CycleRead.model_validate(cycle)


@router.patch("/{cycle_id}", response_model=CycleRead)
def update_cycle_details(
    cycle_id: str,
    payload: CycleDetailsUpdate,
    actor: Actor,
    service: Service,
) -> CycleRead:
    try:
        return CycleRead.model_validate(service.update_details(cycle_id, payload, performed_by=actor))
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.post("/{cycle_id}/trial", response_model=CycleRead)
def assign_to_trial(cycle_id: str, payload: TrialAssignRequest, actor: Actor, service: Service) -> CycleRead:
    try:
        cycle = service.assign_to_trial(
            cycle_id,
            actor,
            payload.company_id,
            contact_id=payload.contact_id,
            start_at=payload.start_at,
            location=payload.location,
            notes=payload.notes,
        )
        return CycleRead.model_validate(cycle)
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.post("/{cycle_id}/soil", response_model=CycleRead)
def mark_soiled(cycle_id: str, actor: Actor, service: Service) -> CycleRead:
    try:
        return CycleRead.model_validate(service.mark_soiled(cycle_id, actor))
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.post("/{cycle_id}/sign-contract", response_model=CycleRead)
def sign_contract(cycle_id: str, payload: SignContractRequest, actor: Actor, service: Service) -> CycleRead:
    try:
        return CycleRead.model_validate(service.sign_contract(cycle_id, actor, payload.frequency))
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.post("/{cycle_id}/mark-contract", response_model=CycleRead)
def mark_contract_signed(
    cycle_id: str,
    actor: Actor,
    service: Service,
    payload: MarkContractRequest | None = None,
) -> CycleRead:
    frequency = payload.frequency if payload is not None else None
    try:
        return CycleRead.model_validate(service.mark_contract_signed(cycle_id, actor, frequency=frequency))
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.post("/{cycle_id}/request-pickup", response_model=CycleRead)
def request_pickup(cycle_id: str, actor: Actor, service: Service) -> CycleRead:
    try:
        return CycleRead.model_validate(service.request_pickup(cycle_id, actor))
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.post("/{cycle_id}/cancel-pickup", response_model=CycleRead)
def cancel_pickup(cycle_id: str, actor: Actor, service: Service) -> CycleRead:
    try:
        return CycleRead.model_validate(service.cancel_pickup(cycle_id, actor))
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.post("/{cycle_id}/complete", response_model=CycleRead)
def complete_cycle(cycle_id: str, actor: Actor, service: Service) -> CycleRead:
    try:
        return CycleRead.model_validate(service.complete(cycle_id, actor))
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.post("/{cycle_id}/extend", response_model=CycleRead)
def extend_trial(
    cycle_id: str,
    actor: Actor,
    service: Service,
    payload: ExtendTrialRequest | None = None,
) -> CycleRead:
    days = payload.days if payload is not None else ExtendTrialRequest().days
    try:
        return CycleRead.model_validate(service.extend(cycle_id, actor, days=days))
    except LifecycleError as exc:
        _handle_cycle_error(exc)
        raise


@router.get("/{cycle_id}/history", response_model=list[HistoryEventRead])
def cycle_history(cycle_id: str, audit: Audit) -> list[HistoryEventRead]:
    return [HistoryEventRead.model_validate(item) for item in audit.history_for_cycle(cycle_id)]


@router.get("/{cycle_id}/timeline", response_model=list[TimelineEntryRead])
def cycle_timeline(cycle_id: str, audit: Audit) -> list[TimelineEntryRead]:
    return audit.timeline(cycle_id)
