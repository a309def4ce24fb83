"""
Failure taxonomy shared by every service.

- ValidationFailed: a required field is missing or a cross-field rule is broken.
  Raised before anything is written.
- OperationFailed: the backend could not complete the call. Covers database
  errors and zero-rows-matched (row gone, stale, or outside the caller's scope);
  callers get one generic message either way.
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


class ValidationFailed(Exception):
    def __init__(self, errors: list[ValidationError]):
        self.errors = list(errors)
        super().__init__(self.summary())

    def summary(self) -> str:
        return "; ".join(f"{e.field}: {e.message}" for e in self.errors)

    def fields(self) -> set[str]:
        return {e.field for e in self.errors}


class OperationFailed(Exception):
    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed")


def raise_if_invalid(errors: list[ValidationError]) -> None:
    if errors:
        raise ValidationFailed(errors)


@contextmanager
def backend_call(operation: str, logger: logging.Logger) -> Generator[None, None, None]:
    """Translate any database error raised inside the block into OperationFailed."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.exception("%s failed at the database", operation)
        raise OperationFailed(operation, str(e)) from e
