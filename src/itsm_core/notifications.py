"""Stage-transition notifications.

The workflow engine decides *what* to send and *to whom*; dispatchers
decide *how*. Recipients are either explicit user ids or a role whose
members the dispatcher resolves (for stages where nobody is assigned yet).

Dispatch happens after the state change is committed. A failing
dispatcher is logged and ignored so it can never undo a transition.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Union

import httpx
from fastapi import BackgroundTasks

from . import models, schemas
from .models import Role

logger = logging.getLogger("itsm-core.notifications")


class NotificationKind(str, enum.Enum):
    """Notification types emitted by the workflow."""

    CR_CREATED = "CR_CREATED"
    LM_APPROVED = "LM_APPROVED"
    HOIT_APPROVED = "HOIT_APPROVED"
    ITO_SUBMITTED = "ITO_SUBMITTED"
    REQUESTOR_CONFIRMED = "REQUESTOR_CONFIRMED"
    QA_VALIDATED = "QA_VALIDATED"
    HOIT_PRODUCTION_APPROVED = "HOIT_PRODUCTION_APPROVED"
    HOIS_APPROVED = "HOIS_APPROVED"
    DEPLOYMENT_COMPLETED = "DEPLOYMENT_COMPLETED"
    CR_REJECTED = "CR_REJECTED"
    CR_CLOSED = "CR_CLOSED"


@dataclass(frozen=True)
class Explicit:
    """Concrete recipients by user id."""

    user_ids: tuple[int, ...]

    @classmethod
    def of(cls, *user_ids: Optional[int]) -> "Explicit":
        """Build from possibly-missing ids, dropping None and duplicates."""
        unique: list[int] = []
        for user_id in user_ids:
            if user_id is not None and user_id not in unique:
                unique.append(user_id)
        return cls(tuple(unique))


@dataclass(frozen=True)
class ByRole:
    """Everyone holding `role`; resolved by the dispatcher."""

    role: Role


Recipients = Union[Explicit, ByRole]


RecipientRule = Callable[[models.ChangeRequest], Recipients]


def _to_role(role: Role) -> RecipientRule:
    return lambda cr: ByRole(role)


def _to_assigned_it_officer(cr: models.ChangeRequest) -> Recipients:
    return Explicit.of(cr.assigned_to_it_officer_id)


def _to_requestor(cr: models.ChangeRequest) -> Recipients:
    return Explicit.of(cr.requested_by)


# Maps the stage a CR just entered → (notification kind, recipient rule)
STAGE_NOTIFICATIONS: dict[int, tuple[NotificationKind, RecipientRule]] = {
    3: (NotificationKind.LM_APPROVED, _to_role(Role.HEAD_OF_IT)),
    4: (NotificationKind.HOIT_APPROVED, _to_assigned_it_officer),
    5: (NotificationKind.ITO_SUBMITTED, _to_requestor),
    6: (NotificationKind.REQUESTOR_CONFIRMED, _to_role(Role.QA_OFFICER)),
    7: (NotificationKind.QA_VALIDATED, _to_role(Role.HEAD_OF_IT)),
    8: (NotificationKind.HOIT_PRODUCTION_APPROVED, _to_role(Role.HEAD_OF_INFOSEC)),
    9: (NotificationKind.HOIS_APPROVED, _to_assigned_it_officer),
    10: (NotificationKind.DEPLOYMENT_COMPLETED, _to_role(Role.NOC)),
}


def stage_notification(cr: models.ChangeRequest) -> Optional[tuple[NotificationKind, Recipients]]:
    """Notification to send after `cr` advanced into its current stage."""
    entry = STAGE_NOTIFICATIONS.get(cr.current_stage)
    if entry is None:
        return None
    kind, recipients_for = entry
    return kind, recipients_for(cr)


SUBJECTS: dict[NotificationKind, str] = {
    NotificationKind.CR_CREATED: "[Action Required] New Change Request {cr_number} - Pending Your Approval",
    NotificationKind.LM_APPROVED: "[Action Required] CR {cr_number} - UAT Approved by Line Manager",
    NotificationKind.HOIT_APPROVED: "[Action Required] CR {cr_number} - Assigned to You for Technical Assessment",
    NotificationKind.ITO_SUBMITTED: "[Action Required] CR {cr_number} - Test Results Ready for Your Confirmation",
    NotificationKind.REQUESTOR_CONFIRMED: "[Action Required] CR {cr_number} - Ready for QA Validation",
    NotificationKind.QA_VALIDATED: "[Action Required] CR {cr_number} - Ready for Production Approval",
    NotificationKind.HOIT_PRODUCTION_APPROVED: "[Action Required] CR {cr_number} - Final Security Approval Required",
    NotificationKind.HOIS_APPROVED: "[Ready to Deploy] CR {cr_number} - Final Approval Granted",
    NotificationKind.DEPLOYMENT_COMPLETED: "[Information] CR {cr_number} - Deployment Completed",
    NotificationKind.CR_REJECTED: "[Rejected] CR {cr_number} - Change Request Rejected",
    NotificationKind.CR_CLOSED: "[Completed] CR {cr_number} - Change Request Closed",
}


def render_subject(snapshot: schemas.ChangeRequestSnapshot, kind: NotificationKind) -> str:
    """Subject line for a notification."""
    template = SUBJECTS.get(kind, "[CR Update] {cr_number} - Status Changed")
    return template.format(cr_number=snapshot.cr_number)


def describe_recipients(recipients: Recipients) -> dict:
    """JSON-friendly form of a recipient rule."""
    if isinstance(recipients, ByRole):
        return {"type": "role", "role": recipients.role.value}
    return {"type": "explicit", "user_ids": list(recipients.user_ids)}


class NotificationDispatcher(Protocol):
    """Delivery collaborator for workflow notifications."""

    def notify(
        self,
        snapshot: schemas.ChangeRequestSnapshot,
        kind: NotificationKind,
        recipients: Recipients,
    ) -> None:
        ...


class LoggingNotificationDispatcher:
    """Writes notifications to the log. Used when no transport is configured."""

    def notify(self, snapshot, kind, recipients) -> None:
        logger.info(
            f"[NOTIFY] {kind.value} for {snapshot.cr_number} "
            f"(status={snapshot.current_status.value}) -> {describe_recipients(recipients)}: "
            f"{render_subject(snapshot, kind)}"
        )


class WebhookNotificationDispatcher:
    """POSTs notifications as JSON to a mail/notification gateway."""

    def __init__(self, url: str, timeout: float = 5.0, frontend_url: Optional[str] = None):
        self.url = url
        self.timeout = timeout
        self.frontend_url = frontend_url

    def build_payload(self, snapshot, kind, recipients) -> dict:
        payload = {
            "kind": kind.value,
            "subject": render_subject(snapshot, kind),
            "recipients": describe_recipients(recipients),
            "change_request": snapshot.model_dump(mode="json"),
        }
        if self.frontend_url:
            payload["link"] = f"{self.frontend_url.rstrip('/')}/change-requests/{snapshot.id}"
        return payload

    def notify(self, snapshot, kind, recipients) -> None:
        response = httpx.post(
            self.url,
            json=self.build_payload(snapshot, kind, recipients),
            timeout=self.timeout,
        )
        response.raise_for_status()
        logger.info(f"Delivered {kind.value} for {snapshot.cr_number} via webhook")


class BackgroundNotificationDispatcher:
    """Defers delivery to FastAPI background tasks (runs after the response)."""

    def __init__(self, background_tasks: BackgroundTasks, inner: NotificationDispatcher):
        self.background_tasks = background_tasks
        self.inner = inner

    def notify(self, snapshot, kind, recipients) -> None:
        self.background_tasks.add_task(deliver, self.inner, snapshot, kind, recipients)


def deliver(
    dispatcher: NotificationDispatcher,
    snapshot: schemas.ChangeRequestSnapshot,
    kind: NotificationKind,
    recipients: Recipients,
) -> None:
    """Invoke a dispatcher, logging (never raising) on failure."""
    if isinstance(recipients, Explicit) and not recipients.user_ids:
        logger.debug(f"Skipping {kind.value} for {snapshot.cr_number}: no recipients")
        return
    try:
        dispatcher.notify(snapshot, kind, recipients)
    except Exception as e:
        logger.error(f"Failed to send {kind.value} notification for {snapshot.cr_number}: {e}", exc_info=True)


def send_notification(
    dispatcher: Optional[NotificationDispatcher],
    cr: models.ChangeRequest,
    kind: NotificationKind,
    recipients: Recipients,
) -> None:
    """Snapshot a committed CR and hand it to the dispatcher."""
    if dispatcher is None:
        return
    snapshot = schemas.ChangeRequestSnapshot.model_validate(cr)
    deliver(dispatcher, snapshot, kind, recipients)


def build_dispatcher(settings) -> NotificationDispatcher:
    """Choose a dispatcher from settings."""
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds,
            frontend_url=settings.frontend_url,
        )
    return LoggingNotificationDispatcher()
