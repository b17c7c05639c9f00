# =====================================================
# FILE: app/services/trigger_evaluator.py
# Decides which templates fire for an entity event
# =====================================================

import logging
from typing import List

from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, ValidationError
from app.models.workflow import WorkflowInstance, WorkflowTemplate
from app.services.condition_matcher import ConditionMatcher
from app.services.entity_events import OPERATIONS, EntityEvent, trigger_types_for
from app.services.notification_sink import EventType, WorkflowEventEmitter
from app.services.workflow_instantiator import WorkflowInstantiator

logger = logging.getLogger(__name__)


class TriggerEvaluator:
    """
    Sole caller of the instantiator for automatic triggers.
    Each template is evaluated inside its own SAVEPOINT so that one
    broken template cannot abort the others.
    """

    def __init__(self, db: Session, emitter: WorkflowEventEmitter, instantiator: WorkflowInstantiator):
        self.db = db
        self.emitter = emitter
        self.instantiator = instantiator

    def candidate_templates(self, event: EntityEvent) -> List[WorkflowTemplate]:
        return (
            self.db.query(WorkflowTemplate)
            .filter(
                WorkflowTemplate.company_id == event.company_id,
                WorkflowTemplate.is_active == True,
                WorkflowTemplate.trigger_type.in_(trigger_types_for(event.entity_type, event.operation)),
            )
            .order_by(WorkflowTemplate.id)
            .all()
        )

    def evaluate(self, event: EntityEvent) -> List[WorkflowInstance]:
        if event.operation not in OPERATIONS:
            raise ValidationError(f"Unsupported operation '{event.operation}'", field="operation")
        if not event.entity_type or event.entity_id in (None, ""):
            raise ValidationError("entity_type and entity_id are required")

        created: List[WorkflowInstance] = []
        templates = self.candidate_templates(event)
        logger.info(
            f"Evaluating {len(templates)} template(s) for {event.entity_type} "
            f"{event.entity_id} ({event.operation})"
        )

        for template in templates:
            mark = self.emitter.checkpoint()
            try:
                with self.db.begin_nested():
                    instance = self._evaluate_template(template, event)
                if instance is not None:
                    created.append(instance)
            except ConflictError as e:
                # lost the race against a concurrent trigger for the same entity
                self.emitter.rollback_to(mark)
                logger.warning(f"Template {template.id} not instantiated: {e.message}")
                self._record_skip(template, event, None, e.message)
            except Exception as e:
                self.emitter.rollback_to(mark)
                logger.exception(f"Template {template.id} failed to evaluate: {str(e)}")
                self.emitter.record(
                    EventType.WORKFLOW_TRIGGER_FAILED,
                    company_id=event.company_id,
                    actor_id=event.actor_user_id,
                    record_id=template.id,
                    detail={
                        "template_id": template.id,
                        "entity_type": event.entity_type,
                        "entity_id": str(event.entity_id),
                        "error": str(e),
                    },
                )

        return created

    def _evaluate_template(self, template: WorkflowTemplate, event: EntityEvent):
        if not ConditionMatcher.matches(template.trigger_conditions, event.snapshot, event.entity_type):
            logger.info(f"Template {template.id} conditions not met for {event.entity_type} {event.entity_id}")
            return None

        existing = self.instantiator.find_active(event.company_id, event.entity_type, str(event.entity_id))
        if existing is not None:
            logger.warning(
                f"Template {template.id} skipped: instance {existing.id} already active for "
                f"{event.entity_type} {event.entity_id}"
            )
            self._record_skip(template, event, existing, "active_instance_exists")
            return None

        return self.instantiator.instantiate(template, event)

    def _record_skip(self, template: WorkflowTemplate, event: EntityEvent, existing, reason: str) -> None:
        self.emitter.record(
            EventType.WORKFLOW_TRIGGER_SKIPPED,
            instance=existing,
            company_id=event.company_id,
            actor_id=event.actor_user_id,
            record_id=existing.id if existing is not None else template.id,
            detail={
                "template_id": template.id,
                "entity_type": event.entity_type,
                "entity_id": str(event.entity_id),
                "reason": reason,
            },
        )
