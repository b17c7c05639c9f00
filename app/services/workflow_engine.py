# =====================================================
# FILE: app/services/workflow_engine.py
# Workflow engine facade - wires the components and owns the
# transaction boundary for every operation
# =====================================================

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.core.permissions import Permission, SUPER_ADMIN
from app.models.audit_log import AuditLog
from app.models.user import User
from app.models.workflow import (
    ACTIVE_STEP_STATUSES,
    WorkflowInstance,
    WorkflowStepExecution,
)
from app.services.approval_service import ApprovalService
from app.services.condition_matcher import ConditionMatcher
from app.services.decision_processor import DecisionProcessor
from app.services.entity_events import EntityEvent
from app.services.notification_sink import NotificationSink, WorkflowEventEmitter
from app.services.reassignment_service import ReassignmentManager
from app.services.role_directory import RoleDirectory, SqlRoleDirectory
from app.services.step_execution_engine import StepExecutionEngine
from app.services.trigger_evaluator import TriggerEvaluator
from app.services.workflow_instantiator import WorkflowInstantiator
from app.services.workflow_template_service import WorkflowTemplateService
from app.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    One engine per request/job. Every mutating call runs as a single
    unit of work: commit on success, rollback on failure, and queued
    notifications are only released after the commit.
    """

    def __init__(
        self,
        db: Session,
        sink: Optional[NotificationSink] = None,
        directory: Optional[RoleDirectory] = None,
    ):
        self.db = db
        self.directory = directory or SqlRoleDirectory(db)
        self.emitter = WorkflowEventEmitter(db, sink)
        self.steps = StepExecutionEngine(db, self.directory, self.emitter)
        self.instantiator = WorkflowInstantiator(db, self.emitter, self.steps)
        self.triggers = TriggerEvaluator(db, self.emitter, self.instantiator)
        self.reassignments = ReassignmentManager(db, self.directory, self.emitter, self.steps)
        self.decisions = DecisionProcessor(db, self.directory, self.emitter, self.steps)
        self.templates = WorkflowTemplateService(db, self.directory)
        self.approvals = ApprovalService(
            db, self.directory, self.emitter, self.instantiator, self.decisions, self.reassignments
        )

    @contextmanager
    def unit_of_work(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.emitter.discard()
            raise
        self.emitter.flush()

    # =====================================================
    # Templates
    # =====================================================

    def create_template(self, actor: User, data: Dict[str, Any]):
        with self.unit_of_work():
            return self.templates.create_template(actor, data)

    def update_template(self, template_id: int, actor: User, data: Dict[str, Any]):
        with self.unit_of_work():
            return self.templates.update_template(template_id, actor, data)

    def deactivate_template(self, template_id: int, actor: User):
        with self.unit_of_work():
            return self.templates.deactivate_template(template_id, actor)

    def delete_template(self, template_id: int, actor: User) -> None:
        with self.unit_of_work():
            self.templates.delete_template(template_id, actor)

    def get_template(self, template_id: int, actor: User):
        self._require(actor, Permission.WORKFLOW_VIEW)
        return self.templates.get_template(template_id, actor.company_id)

    def list_templates(self, actor: User, is_active: Optional[bool] = None):
        self._require(actor, Permission.WORKFLOW_VIEW)
        return self.templates.list_templates(actor.company_id, is_active)

    def run_template(
        self,
        template_id: int,
        actor: User,
        entity_id: str,
        snapshot: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Manual 'run workflow' action against one entity"""
        self._require(actor, Permission.WORKFLOW_CREATE)
        with self.unit_of_work():
            template = self.templates.get_template(template_id, actor.company_id)
            if not template.is_active:
                raise ValidationError(f"Workflow template {template.id} is not active")
            if template.trigger_conditions and not ConditionMatcher.matches(
                template.trigger_conditions, snapshot or {}, template.entity_type
            ):
                raise ValidationError("Entity does not satisfy the template's trigger conditions")

            event = EntityEvent(
                entity_type=template.entity_type,
                entity_id=str(entity_id),
                operation="manual",
                company_id=actor.company_id,
                snapshot=snapshot or {},
                actor_user_id=actor.id,
            )
            return self.instantiator.instantiate(template, event)

    # =====================================================
    # Entity events
    # =====================================================

    def evaluate_event(self, event: EntityEvent) -> List[WorkflowInstance]:
        with self.unit_of_work():
            return self.triggers.evaluate(event)

    # =====================================================
    # Instances
    # =====================================================

    def get_instance(self, instance_id: int, actor: User) -> WorkflowInstance:
        self._require(actor, Permission.WORKFLOW_VIEW)
        instance = self.db.get(WorkflowInstance, instance_id)
        if instance is None or not self._same_company(actor, instance.company_id):
            raise NotFoundError("Workflow instance", instance_id)
        return instance

    def list_instances(
        self,
        actor: User,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WorkflowInstance], int]:
        self._require(actor, Permission.WORKFLOW_VIEW)
        query = self.db.query(WorkflowInstance).filter(WorkflowInstance.company_id == actor.company_id)
        if status:
            query = query.filter(WorkflowInstance.status == status)
        if entity_type:
            query = query.filter(WorkflowInstance.entity_type == entity_type)
        if entity_id:
            query = query.filter(WorkflowInstance.entity_id == str(entity_id))

        total = query.count()
        items = (
            query.order_by(WorkflowInstance.started_at.desc(), WorkflowInstance.id.desc())
            .offset(max(offset, 0))
            .limit(min(max(limit, 1), 100))
            .all()
        )
        return items, total

    def get_history(self, instance_id: int, actor: User) -> List[AuditLog]:
        instance = self.get_instance(instance_id, actor)
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.workflow_instance_id == instance.id)
            .order_by(AuditLog.created_at, AuditLog.id)
            .all()
        )

    def cancel_instance(self, instance_id: int, actor: User, reason: Optional[str] = None) -> WorkflowInstance:
        with self.unit_of_work():
            instance = self.db.get(WorkflowInstance, instance_id)
            if instance is None or not self._same_company(actor, instance.company_id):
                raise NotFoundError("Workflow instance", instance_id)
            if not (
                instance.triggered_by == actor.id
                or self.directory.has_permission(actor, Permission.WORKFLOW_MANAGE)
            ):
                raise UnauthorizedError("Only the requester or a workflow manager can cancel this workflow")
            if not instance.is_active:
                raise ConflictError(f"Workflow instance {instance.id} is already {instance.status}")

            self.steps.cancel_instance(instance, actor.id, reason)
            return instance

    # =====================================================
    # Step executions
    # =====================================================

    def get_execution(self, execution_id: int, actor: User) -> WorkflowStepExecution:
        execution = self.db.get(WorkflowStepExecution, execution_id)
        if execution is None:
            raise NotFoundError("Step execution", execution_id)
        self.get_instance(execution.instance_id, actor)
        return execution

    def start_step(self, execution_id: int, actor: User) -> WorkflowStepExecution:
        with self.unit_of_work():
            return self.decisions.start(execution_id, actor)

    def decide(
        self,
        execution_id: int,
        actor: User,
        decision: str,
        reason: Optional[str] = None,
        is_internal: bool = False,
    ):
        with self.unit_of_work():
            return self.decisions.decide(execution_id, actor, decision, reason, is_internal)

    def reassign(
        self,
        execution_id: int,
        actor: User,
        reason: str,
        new_user_id: Optional[int] = None,
        new_role_id: Optional[int] = None,
    ) -> WorkflowStepExecution:
        with self.unit_of_work():
            return self.reassignments.reassign(execution_id, actor, reason, new_user_id, new_role_id)

    def list_reassignments(self, execution_id: int, actor: User):
        return self.reassignments.history(execution_id, actor)

    # =====================================================
    # Approval requests
    # =====================================================

    def create_approval_request(self, actor: User, **fields):
        with self.unit_of_work():
            return self.approvals.create_approval_request(actor, **fields)

    def get_approval(self, approval_id: int, actor: User):
        return self.approvals.get_approval(approval_id, actor)

    def list_approval_requests(self, actor: User, **filters):
        return self.approvals.list_approval_requests(actor, **filters)

    def get_pending_approvals(self, actor: User):
        return self.approvals.get_pending_approvals(actor)

    def get_approval_metrics(self, actor: User) -> Dict[str, Any]:
        self._require(actor, Permission.WORKFLOW_VIEW)
        return self.approvals.get_approval_metrics(actor.company_id)

    def list_approval_comments(self, approval_id: int, actor: User):
        return self.approvals.list_comments(approval_id, actor)

    def review_approval(self, approval_id: int, actor: User, decision: str, decision_reason=None, notes=None):
        with self.unit_of_work():
            return self.approvals.review(approval_id, actor, decision, decision_reason, notes)

    def add_approval_comment(self, approval_id: int, actor: User, comment: str, is_internal: bool = False):
        with self.unit_of_work():
            return self.approvals.add_comment(approval_id, actor, comment, is_internal)

    def reassign_approval(self, approval_id: int, actor: User, reason: str, new_user_id=None, new_role_id=None):
        with self.unit_of_work():
            return self.approvals.reassign(approval_id, actor, reason, new_user_id, new_role_id)

    def release_user_assignments(self, user_id: int, reason: str, actor: Optional[User] = None) -> Dict[str, List[int]]:
        if actor is not None:
            self._require(actor, Permission.WORKFLOW_MANAGE)
        with self.unit_of_work():
            return self.reassignments.release_user_assignments(user_id, reason, actor)

    # =====================================================
    # Background jobs
    # =====================================================

    def sweep_timeouts(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Time out overdue executions, escalating where a target is
        configured. Each execution is handled in its own transaction;
        a failure on one does not stop the sweep.
        """
        now = now or utcnow()
        due_ids = [
            row[0]
            for row in self.db.query(WorkflowStepExecution.id)
            .filter(
                WorkflowStepExecution.status.in_(ACTIVE_STEP_STATUSES),
                WorkflowStepExecution.timeout_at.isnot(None),
                WorkflowStepExecution.timeout_at <= now,
                WorkflowStepExecution.superseded_at.is_(None),
            )
            .order_by(WorkflowStepExecution.timeout_at, WorkflowStepExecution.id)
            .all()
        ]
        self.db.commit()

        result = {"timed_out": 0, "escalated": 0, "skipped": 0, "errors": 0}
        for execution_id in due_ids:
            try:
                with self.unit_of_work():
                    outcome = self._expire_one(execution_id, now)
                result[outcome] += 1
            except ConflictError as e:
                result["skipped"] += 1
                logger.info(f"Timeout sweep skipped execution {execution_id}: {e.message}")
            except Exception as e:
                result["errors"] += 1
                logger.exception(f"Timeout sweep failed for execution {execution_id}: {str(e)}")

        if due_ids:
            logger.info(f"Timeout sweep finished: {result}")
        return result

    def _expire_one(self, execution_id: int, now: datetime) -> str:
        execution = self.db.get(WorkflowStepExecution, execution_id)
        self.db.refresh(execution)
        if execution.status not in ACTIVE_STEP_STATUSES:
            return "skipped"

        self.steps.expire(execution, now)
        if self.reassignments.can_escalate(execution) and self.reassignments.escalate(execution):
            return "escalated"
        self.steps.advance(execution)
        return "timed_out"

    def send_reminders(self, now: Optional[datetime] = None) -> Dict[str, int]:
        with self.unit_of_work():
            return self.approvals.send_reminders(
                settings.REMINDER_FIRST_HOURS, settings.REMINDER_URGENT_HOURS, now
            )

    # =====================================================
    # Helpers
    # =====================================================

    def _require(self, actor: User, permission: Permission) -> None:
        if not self.directory.has_permission(actor, permission):
            raise UnauthorizedError(f"Permission '{permission.value}' required")

    @staticmethod
    def _same_company(actor: User, company_id: int) -> bool:
        return actor.user_type == SUPER_ADMIN or actor.company_id == company_id
