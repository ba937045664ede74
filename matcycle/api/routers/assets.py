from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from matcycle.api.deps import Actor, lifecycle_http_error
from matcycle.domain.filters import AssetFilter
from matcycle.domain.models import AssetAllocateRequest, AssetRead, AssetStatsRead
from matcycle.domain.state_machine import AssetStatus
from matcycle.services.asset_ledger import AssetLedger
from matcycle.services.errors import LifecycleError

router = APIRouter()


def get_asset_ledger() -> AssetLedger:
    return AssetLedger()


Service = Annotated[AssetLedger, Depends(get_asset_ledger)]


def _handle_asset_error(exc: LifecycleError) -> None:
    raise lifecycle_http_error(exc) from exc


@router.post("/allocate", response_model=list[AssetRead], status_code=status.HTTP_201_CREATED)
def allocate_codes(payload: AssetAllocateRequest, actor: Actor, service: Service) -> list[AssetRead]:
    try:
        rows = service.allocate(
            payload.owner_id,
            payload.prefix,
            payload.count,
            pending=payload.pending,
            order_ref=payload.order_ref,
        )
        return [AssetRead.model_validate(item) for item in rows]
    except LifecycleError as exc:
        _handle_asset_error(exc)
        raise


@router.get("", response_model=list[AssetRead])
def list_assets(
    service: Service,
    owner_id: str | None = None,
    status_filter: Annotated[list[AssetStatus] | None, Query(alias="status")] = None,
    code: str | None = None,
    code_prefix: str | None = None,
    order_ref: str | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 200,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[AssetRead]:
    if code is not None:
        asset = service.find_by_code(code)
        return [] if asset is None else [AssetRead.model_validate(asset)]
    spec = AssetFilter(
        owner_id=owner_id,
        statuses=None if not status_filter else tuple(status_filter),
        code_prefix=None if code_prefix is None else code_prefix.upper(),
        order_ref=order_ref,
    )
    rows = service.list_assets(spec, limit=limit, offset=offset)
    return [AssetRead.model_validate(item) for item in rows]


@router.get("/stats", response_model=AssetStatsRead)
def asset_stats(owner_id: str, service: Service) -> AssetStatsRead:
    return service.stats(owner_id)


@router.get("/{asset_id}", response_model=AssetRead)
def get_asset(asset_id: str, service: Service) -> AssetRead:
    asset = service.get_asset(asset_id)
    if asset is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset not found")
    return AssetRead.model_validate(asset)


@router.post("/{asset_id}/reserve", response_model=AssetRead)
def reserve_asset(asset_id: str, actor: Actor, service: Service) -> AssetRead:
    try:
        return AssetRead.model_validate(service.reserve(asset_id))
    except LifecycleError as exc:
        _handle_asset_error(exc)
        raise


@router.post("/{asset_id}/mark-pending", response_model=AssetRead)
def mark_asset_pending(asset_id: str, actor: Actor, service: Service) -> AssetRead:
    try:
        return AssetRead.model_validate(service.mark_pending(asset_id))
    except LifecycleError as exc:
        _handle_asset_error(exc)
        raise


@router.delete("/{asset_id}", status_code=status.HTTP_204_NO_CONTENT)
def discard_asset(asset_id: str, actor: Actor, service: Service) -> Response:
    try:
        service.discard(asset_id)
    except LifecycleError as exc:
        _handle_asset_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
