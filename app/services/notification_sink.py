# =====================================================
# FILE: app/services/notification_sink.py
# Workflow event emitter and notification sinks
# =====================================================

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.audit_log import AuditLog
from app.models.notification import Notification
from app.models.user import User
from app.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


class EventType:
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_REJECTED = "workflow_rejected"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_TIMED_OUT = "workflow_timed_out"
    WORKFLOW_REOPENED = "workflow_reopened"
    WORKFLOW_TRIGGER_SKIPPED = "workflow_trigger_skipped"
    WORKFLOW_TRIGGER_FAILED = "workflow_trigger_failed"
    STEP_ASSIGNED = "step_assigned"
    STEP_STARTED = "step_started"
    STEP_APPROVED = "step_approved"
    STEP_REJECTED = "step_rejected"
    STEP_SKIPPED = "step_skipped"
    STEP_TIMED_OUT = "step_timed_out"
    STEP_ESCALATED = "step_escalated"
    STEP_REASSIGNED = "step_reassigned"
    STEP_NOTIFICATION = "step_notification"
    STEP_FAILED = "step_failed"
    COMMENT_ADDED = "comment_added"
    APPROVAL_ORPHANED = "approval_orphaned"
    APPROVAL_REMINDER = "approval_reminder"
    APPROVAL_URGENT_REMINDER = "approval_urgent_reminder"


EVENT_TITLES = {
    EventType.WORKFLOW_STARTED: "Workflow started",
    EventType.WORKFLOW_COMPLETED: "Workflow approved",
    EventType.WORKFLOW_REJECTED: "Workflow rejected",
    EventType.WORKFLOW_CANCELLED: "Workflow cancelled",
    EventType.WORKFLOW_FAILED: "Workflow failed",
    EventType.WORKFLOW_TIMED_OUT: "Workflow timed out",
    EventType.WORKFLOW_REOPENED: "Workflow reopened",
    EventType.STEP_ASSIGNED: "Approval required",
    EventType.STEP_ESCALATED: "Approval escalated to you",
    EventType.STEP_REASSIGNED: "Approval reassigned to you",
    EventType.STEP_NOTIFICATION: "Workflow notification",
    EventType.COMMENT_ADDED: "New comment on approval",
    EventType.APPROVAL_ORPHANED: "Approval has no eligible assignee",
    EventType.APPROVAL_REMINDER: "Approval reminder",
    EventType.APPROVAL_URGENT_REMINDER: "Urgent: approval overdue",
}


@dataclass
class WorkflowEvent:
    """Structured record of one state transition"""
    type: str
    company_id: Optional[int]
    instance_id: Optional[int]
    step_execution_id: Optional[int] = None
    actor_id: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow)
    detail: Dict[str, Any] = field(default_factory=dict)
    recipients: List[int] = field(default_factory=list)
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "company_id": self.company_id,
            "instance_id": self.instance_id,
            "step_execution_id": self.step_execution_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
            "recipients": self.recipients,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
        }


class NotificationSink(Protocol):
    def send(self, event: WorkflowEvent) -> None:
        ...


class WorkflowEventEmitter:
    """
    Collects workflow events for one unit of work.

    record() writes the history (AuditLog) row in the caller's
    transaction and queues the event. flush() hands queued events to
    the sink once the transaction committed; discard() drops them
    after a rollback.
    """

    def __init__(self, db: Session, sink: Optional[NotificationSink] = None):
        self.db = db
        self.sink = sink
        self._pending: List[WorkflowEvent] = []

    @property
    def pending(self) -> List[WorkflowEvent]:
        return list(self._pending)

    def record(
        self,
        event_type: str,
        instance=None,
        execution=None,
        actor_id: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        recipients: Optional[List[int]] = None,
        company_id: Optional[int] = None,
        table_name: Optional[str] = None,
        record_id: Optional[Any] = None,
    ) -> WorkflowEvent:
        if (instance is not None and instance.id is None) or (execution is not None and execution.id is None):
            self.db.flush()

        event = WorkflowEvent(
            type=event_type,
            company_id=company_id if company_id is not None else getattr(instance, "company_id", None),
            instance_id=instance.id if instance is not None else None,
            step_execution_id=execution.id if execution is not None else None,
            actor_id=actor_id,
            detail=dict(detail or {}),
            recipients=sorted(set(r for r in (recipients or []) if r is not None)),
            entity_type=getattr(instance, "entity_type", None),
            entity_id=getattr(instance, "entity_id", None),
        )

        if table_name is None:
            table_name = "workflow_instances" if instance is not None else "workflow_templates"
        if record_id is None:
            record_id = instance.id if instance is not None else None

        audit = AuditLog(
            company_id=event.company_id,
            table_name=table_name,
            record_id=str(record_id) if record_id is not None else "-",
            workflow_instance_id=event.instance_id,
            step_execution_id=event.step_execution_id,
            action=event_type,
            user_id=actor_id,
            changes=event.detail,
            created_at=event.timestamp,
        )
        self.db.add(audit)
        self._pending.append(event)

        logger.info(
            f"Workflow event {event_type} instance={event.instance_id} "
            f"execution={event.step_execution_id} actor={actor_id}"
        )
        return event

    def checkpoint(self) -> int:
        return len(self._pending)

    def rollback_to(self, mark: int) -> None:
        del self._pending[mark:]

    def discard(self) -> None:
        if self._pending:
            logger.info(f"Discarding {len(self._pending)} workflow event(s) from rolled back work")
        self._pending.clear()

    def flush(self) -> None:
        events, self._pending = self._pending, []
        if self.sink is None:
            return
        for event in events:
            try:
                self.sink.send(event)
            except Exception as e:
                logger.error(f"Notification sink failed for {event.type}: {str(e)}")


class LoggingNotificationSink:
    def send(self, event: WorkflowEvent) -> None:
        logger.info(f"[workflow-notification] {event.type} -> {event.recipients} {event.detail}")


class InAppNotificationSink:
    """Writes Notification rows for event recipients in its own session"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def send(self, event: WorkflowEvent) -> None:
        if not event.recipients or event.type not in EVENT_TITLES:
            return

        db = self.session_factory()
        try:
            for user_id in event.recipients:
                db.add(Notification(
                    user_id=user_id,
                    company_id=event.company_id,
                    notification_type=event.type,
                    title=EVENT_TITLES[event.type],
                    message=_describe(event),
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                ))
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to store in-app notifications for {event.type}: {str(e)}")
        finally:
            db.close()


class EmailNotificationSink:
    """Sends workflow emails to event recipients"""

    EMAIL_EVENTS = {
        EventType.STEP_ASSIGNED,
        EventType.STEP_ESCALATED,
        EventType.STEP_REASSIGNED,
        EventType.WORKFLOW_COMPLETED,
        EventType.WORKFLOW_REJECTED,
        EventType.APPROVAL_ORPHANED,
        EventType.APPROVAL_REMINDER,
        EventType.APPROVAL_URGENT_REMINDER,
    }

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def send(self, event: WorkflowEvent) -> None:
        if event.type not in self.EMAIL_EVENTS or not event.recipients:
            return

        from app.services.workflow_email_service import WorkflowEmailService

        db = self.session_factory()
        try:
            users = db.query(User).filter(User.id.in_(event.recipients), User.is_active == True).all()
            for user in users:
                WorkflowEmailService.send_event_email(
                    email=user.email,
                    recipient_name=user.full_name,
                    event=event,
                    title=EVENT_TITLES.get(event.type, event.type),
                    summary=_describe(event),
                )
        finally:
            db.close()


class CompositeNotificationSink:
    def __init__(self, sinks: List[NotificationSink]):
        self.sinks = list(sinks)

    def send(self, event: WorkflowEvent) -> None:
        for sink in self.sinks:
            try:
                sink.send(event)
            except Exception as e:
                logger.error(f"{type(sink).__name__} failed for {event.type}: {str(e)}")


def _describe(event: WorkflowEvent) -> str:
    title = event.detail.get("title")
    subject = title or f"{event.entity_type} {event.entity_id}"
    step = event.detail.get("step_name")
    if step:
        return f"{subject} - {step}"
    return subject


def build_default_sink(session_factory: Callable[[], Session]) -> NotificationSink:
    sinks: List[NotificationSink] = [LoggingNotificationSink(), InAppNotificationSink(session_factory)]
    if settings.EMAIL_NOTIFICATIONS_ENABLED:
        sinks.append(EmailNotificationSink(session_factory))
    return CompositeNotificationSink(sinks)
