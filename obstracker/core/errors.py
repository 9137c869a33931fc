from __future__ import annotations

from typing import Iterable, List, Optional

from pydantic import BaseModel


class FieldError(BaseModel):
    field: str
    message: str


class RecordStoreError(Exception):
    """Transport failure or non-2xx answer from the data API."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RecordNotFoundError(RecordStoreError):
    def __init__(self, entity: str, key: str) -> None:
        super().__init__(f'{entity} "{key}" not found', status_code=404)
        self.entity = entity
        self.key = key


class ValidationFailed(ValueError):
    def __init__(self, errors: Iterable[FieldError]) -> None:
        self.errors: List[FieldError] = list(errors)
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in self.errors) or "Validation failed")


class ReconcileConflict(ValueError):
    """Accept/reject requested on an observation that is already closed."""
