from __future__ import annotations

from typing import Any


class LifecycleError(Exception):
    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        attempted: str | None = None,
        observed: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.attempted = attempted
        self.observed = observed
        self.detail = detail or {}

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": str(self)}
        if self.entity_type is not None:
            payload["entity_type"] = self.entity_type
        if self.entity_id is not None:
            payload["entity_id"] = self.entity_id
        if self.attempted is not None:
            payload["attempted"] = self.attempted
        if self.observed is not None:
            payload["observed"] = self.observed
        if self.detail:
            payload["detail"] = self.detail
        return payload


class NotFoundError(LifecycleError):
    pass


class ValidationError(LifecycleError):
    pass


class ConflictError(LifecycleError):
    pass


class UpstreamError(LifecycleError):
    pass
