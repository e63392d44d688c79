"""API routers for ITSM Core."""

from . import change_requests

__all__ = ["change_requests"]
