"""Error taxonomy for the change request workflow engine.

Every engine operation either returns the mutated/queried aggregate or
raises one of these. The API layer maps them onto HTTP status codes:

- NotFoundError          -> 404
- ValidationError        -> 400
- PermissionDeniedError  -> 403
- ConflictError          -> 409
"""
from typing import Optional


class ChangeRequestError(Exception):
    """Base class for workflow errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ChangeRequestError, LookupError):
    """Raised when a change request or one of its satellite records is absent."""

    def __init__(self, message: str, resource_type: str = "change_request"):
        super().__init__(message)
        self.resource_type = resource_type


class ValidationError(ChangeRequestError, ValueError):
    """Raised when a payload or the CR state fails a business rule."""


class PermissionDeniedError(ChangeRequestError):
    """Raised when the actor is not allowed to perform the action."""

    def __init__(
        self,
        message: str,
        required_role: Optional[str] = None,
        current_roles: Optional[list[str]] = None,
        resource_type: str = "change_request",
    ):
        super().__init__(message)
        self.required_role = required_role
        self.current_roles = current_roles or []
        self.resource_type = resource_type


class ConflictError(ChangeRequestError):
    """Raised when the CR was modified by someone else between load and commit."""

    def __init__(self, message: str, cr_id: Optional[int] = None):
        super().__init__(message)
        self.cr_id = cr_id
