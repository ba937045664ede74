from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from matcycle.services.errors import (
    ConflictError,
    LifecycleError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

_STATUS_BY_ERROR: tuple[tuple[type[LifecycleError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, 422),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY),
)


def get_actor_id(x_actor_id: Annotated[str, Header(min_length=1, max_length=100)]) -> str:
    return x_actor_id.strip()


Actor = Annotated[str, Depends(get_actor_id)]


def lifecycle_http_error(exc: LifecycleError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.as_dict())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.as_dict())
