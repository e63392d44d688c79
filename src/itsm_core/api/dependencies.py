"""Request-scoped dependencies: acting user, notifier and blob store."""
import logging
from typing import Optional

from fastapi import BackgroundTasks, Depends, Header, HTTPException, status

from ..blob_store import LocalBlobStore
from ..config import get_settings
from ..notifications import BackgroundNotificationDispatcher, NotificationDispatcher, build_dispatcher
from ..roles import Actor, resolve_actor

logger = logging.getLogger("itsm-core.api.dependencies")


def get_current_actor(
    x_user_id: Optional[str] = Header(
        None,
        description="Authenticated user id, set by the upstream identity provider",
    ),
    x_user_roles: Optional[str] = Header(
        None,
        description="Comma-separated role tags in priority order (e.g. head_of_it,it_officer)",
    ),
) -> Actor:
    """
    Resolve the acting user from identity headers.

    Authentication happens upstream; the gateway forwards the user id and
    role tags. Unknown tags are ignored and every user holds `requestor`.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unauthenticated", "message": "X-User-Id header is required"},
        )
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unauthenticated", "message": f"Invalid X-User-Id: {x_user_id}"},
        )

    tags = x_user_roles.split(",") if x_user_roles else []
    return resolve_actor(user_id, tags)


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    """Process-wide delivery dispatcher chosen from settings."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(get_settings())
        logger.info(f"Using {type(_dispatcher).__name__} for notifications")
    return _dispatcher


def get_notifier(
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> NotificationDispatcher:
    """Dispatcher that delivers after the response has been sent."""
    return BackgroundNotificationDispatcher(background_tasks, dispatcher)


_blob_store: Optional[LocalBlobStore] = None


def get_blob_store() -> LocalBlobStore:
    global _blob_store
    if _blob_store is None:
        _blob_store = LocalBlobStore(get_settings().upload_dir)
    return _blob_store
