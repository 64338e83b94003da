"""Error taxonomy for the storage core.

Repositories return ``None`` or empty results for "not found" and raise one of
these for anything else abnormal.
"""
import functools
import logging
from typing import List, Optional, Type

logger = logging.getLogger(__name__)


class FeedbackFlowError(Exception):
    """Base class for all storage core errors."""


class ValidationError(FeedbackFlowError):
    """A request field is missing or out of range."""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = fields or []


class ConflictError(FeedbackFlowError):
    """An external id is already mapped to a tester."""

    def __init__(self, external_id: str, tester_uuid: Optional[str] = None):
        super().__init__(f"ID {external_id} is already assigned")
        self.external_id = external_id
        self.tester_uuid = tester_uuid


class NotFoundError(FeedbackFlowError):
    """An entity the caller requires does not exist."""

    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} {key} not found")
        self.entity = entity
        self.key = key


class UnsupportedOperationError(FeedbackFlowError):
    """The backend does not implement this operation."""

    def __init__(self, operation: str, backend: str, hint: str = ""):
        message = f"{operation} is not supported by the {backend} backend"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)
        self.operation = operation
        self.backend = backend


class BackendFailure(FeedbackFlowError):
    """The underlying storage call failed.

    The storage exception is kept as ``__cause__``.
    """

    def __init__(self, operation: str, backend: str, detail: str = ""):
        message = f"{backend} backend failed during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.backend = backend


def translate_errors(operation: str, backend: str, *error_types: Type[BaseException]):
    """Decorator re-raising driver errors of ``error_types`` as ``BackendFailure``."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except error_types as e:
                logger.error(f"{backend} backend failed during {operation}: {e}", exc_info=True)
                raise BackendFailure(operation, backend, str(e)) from e
        return wrapper
    return decorator
