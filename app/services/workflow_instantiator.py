# =====================================================
# FILE: app/services/workflow_instantiator.py
# Creates workflow instances and activates their first step
# =====================================================

import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ConflictError, ValidationError
from app.models.workflow import (
    TimeoutAction,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTemplate,
)
from app.services.entity_events import EntityEvent
from app.services.notification_sink import EventType, WorkflowEventEmitter
from app.services.step_execution_engine import StepExecutionEngine
from app.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


class WorkflowInstantiator:
    def __init__(self, db: Session, emitter: WorkflowEventEmitter, engine: StepExecutionEngine):
        self.db = db
        self.emitter = emitter
        self.engine = engine

    def find_active(self, company_id: int, entity_type: str, entity_id: str) -> Optional[WorkflowInstance]:
        key = WorkflowInstance.build_active_key(company_id, entity_type, str(entity_id))
        return self.db.query(WorkflowInstance).filter(WorkflowInstance.active_key == key).first()

    def instantiate(self, template: WorkflowTemplate, event: EntityEvent, title: Optional[str] = None) -> WorkflowInstance:
        steps = [step.to_snapshot() for step in template.steps]
        if not steps:
            raise ValidationError(f"Workflow template {template.id} has no steps", field="steps")

        return self.instantiate_steps(
            event,
            steps,
            template_id=template.id,
            title=title or f"{template.name}: {event.entity_type} {event.entity_id}",
            description=template.description,
            priority=template.priority,
            parallel_policy=template.parallel_policy,
            timeout_action=template.timeout_action,
        )

    def instantiate_steps(
        self,
        event: EntityEvent,
        steps: List[Dict],
        template_id: Optional[int] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        priority: Optional[str] = None,
        request_type: str = "approve",
        parallel_policy: Optional[str] = None,
        timeout_action: Optional[str] = None,
    ) -> WorkflowInstance:
        """
        Create the instance row and run its first step(s) in the
        caller's transaction. The snapshot of both the entity and the
        step list is frozen here.
        """
        entity_id = str(event.entity_id)
        existing = self.find_active(event.company_id, event.entity_type, entity_id)
        if existing is not None:
            raise ConflictError(
                f"Workflow instance {existing.id} is already active for {event.entity_type} {entity_id}"
            )

        steps = sorted(steps, key=lambda s: s["step_number"])
        instance = WorkflowInstance(
            company_id=event.company_id,
            template_id=template_id,
            status=WorkflowStatus.PENDING.value,
            entity_type=event.entity_type,
            entity_id=entity_id,
            active_key=WorkflowInstance.build_active_key(event.company_id, event.entity_type, entity_id),
            current_step_number=steps[0]["step_number"],
            title=title,
            description=description,
            priority=priority or "Medium",
            request_type=request_type,
            trigger_operation=event.operation,
            snapshot=dict(event.snapshot or {}),
            template_snapshot=steps,
            parallel_policy=parallel_policy or settings.DEFAULT_PARALLEL_POLICY,
            timeout_action=timeout_action or TimeoutAction.REJECT.value,
            triggered_by=event.actor_user_id,
            started_at=utcnow(),
        )

        try:
            with self.db.begin_nested():
                self.db.add(instance)
                self.db.flush()
        except IntegrityError:
            raise ConflictError(f"A workflow is already active for {event.entity_type} {entity_id}")

        logger.info(
            f"Workflow instance {instance.id} created for {event.entity_type} {entity_id} "
            f"(template {template_id}, {len(steps)} steps)"
        )
        self.emitter.record(
            EventType.WORKFLOW_STARTED, instance, None, event.actor_user_id,
            detail={
                "template_id": template_id,
                "title": title,
                "operation": event.operation,
                "step_count": len(steps),
            },
        )

        self.engine.activate_from(instance, instance.first_step_number(), event.actor_user_id)
        return instance
