# =====================================================
# FILE: app/services/decision_processor.py
# Approve / reject / reopen / comment on step executions
# =====================================================

import logging
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import (
    AlreadyDecidedError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from app.core.permissions import Permission, SUPER_ADMIN
from app.models.approval import ApprovalComment, ApprovalStatus
from app.models.user import User
from app.models.workflow import (
    ACTIVE_STEP_STATUSES,
    Decision,
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStepExecution,
)
from app.services.notification_sink import EventType, WorkflowEventEmitter
from app.services.role_directory import RoleDirectory
from app.services.step_execution_engine import StepExecutionEngine
from app.utils.datetime_helpers import hours_from, utcnow

logger = logging.getLogger(__name__)

DECISION_ALIASES = {
    "approve": "approve",
    "approved": "approve",
    "reject": "reject",
    "rejected": "reject",
    "reopen": "reopen",
    "comment": "comment",
}

# finished states a parallel sibling can be brought back from on reopen
REARMABLE_STEP_STATUSES = (
    StepStatus.COMPLETED.value,
    StepStatus.SKIPPED.value,
    StepStatus.TIMEOUT.value,
)


class DecisionProcessor:
    """
    Applies a reviewer's decision to a step execution and cascades it
    to the instance in the same transaction.
    """

    def __init__(
        self,
        db: Session,
        directory: RoleDirectory,
        emitter: WorkflowEventEmitter,
        engine: StepExecutionEngine,
    ):
        self.db = db
        self.directory = directory
        self.emitter = emitter
        self.engine = engine

    def decide(
        self,
        execution_id: int,
        actor: User,
        decision: str,
        reason: Optional[str] = None,
        is_internal: bool = False,
    ) -> Union[WorkflowStepExecution, ApprovalComment]:
        action = DECISION_ALIASES.get((decision or "").lower())
        if action is None:
            raise ValidationError(f"Unknown decision '{decision}'", field="decision")

        execution, instance = self._load(execution_id, actor)

        if action == "comment":
            return self.comment(execution, instance, actor, reason, is_internal)
        if action == "reopen":
            return self.reopen(execution, instance, actor, reason)
        return self._record_decision(execution, instance, actor, action, reason)

    def start(self, execution_id: int, actor: User) -> WorkflowStepExecution:
        """assigned -> in_progress; a role holder starting a queue step claims it"""
        execution, instance = self._load(execution_id, actor)
        if execution.status != StepStatus.ASSIGNED.value:
            if execution.status == StepStatus.COMPLETED.value:
                raise AlreadyDecidedError(execution.id)
            raise ConflictError(f"Step execution {execution.id} is {execution.status} and cannot be started")
        self._authorize(execution, actor)

        values = {
            "status": StepStatus.IN_PROGRESS.value,
            "acknowledged_at": utcnow(),
        }
        extra = []
        if execution.assigned_to is None:
            values["assigned_to"] = actor.id
            values["assignee_name"] = actor.full_name
            extra.append(WorkflowStepExecution.assigned_to.is_(None))
        self.engine.cas_execution(execution, (StepStatus.ASSIGNED.value,), values, extra_filters=extra)

        approval = self.engine.approval_for(execution)
        if approval is not None:
            approval.status = ApprovalStatus.IN_REVIEW.value
            approval.assigned_to = execution.assigned_to
            approval.reviewed_by = actor.id
            approval.reviewed_at = execution.acknowledged_at

        self.emitter.record(
            EventType.STEP_STARTED, instance, execution, actor.id,
            detail={"step_number": execution.step_number, "step_name": execution.step_name},
        )
        return execution

    # ------------------------------------------------------------------
    # approve / reject
    # ------------------------------------------------------------------

    def _record_decision(
        self,
        execution: WorkflowStepExecution,
        instance: WorkflowInstance,
        actor: User,
        action: str,
        reason: Optional[str],
    ) -> WorkflowStepExecution:
        reason = reason.strip() if reason else None
        if action == "reject" and not reason:
            raise ValidationError("A reason is required to reject", field="reason")

        if execution.status not in ACTIVE_STEP_STATUSES:
            if execution.status == StepStatus.COMPLETED.value:
                raise AlreadyDecidedError(execution.id)
            raise ConflictError(f"Step execution {execution.id} is {execution.status} and cannot be decided")

        self._authorize(execution, actor)

        decision = Decision.APPROVED.value if action == "approve" else Decision.REJECTED.value
        self.engine.cas_execution(execution, ACTIVE_STEP_STATUSES, {
            "status": StepStatus.COMPLETED.value,
            "decision": decision,
            "notes": reason,
            "decided_by": actor.id,
            "completed_at": utcnow(),
        })
        self.engine.close_approval_request(
            execution,
            ApprovalStatus.APPROVED.value if decision == Decision.APPROVED.value else ApprovalStatus.REJECTED.value,
            decision,
            reason,
            reviewed_by=actor.id,
        )

        logger.info(f"Step execution {execution.id} {decision} by user {actor.id}")
        self.emitter.record(
            EventType.STEP_APPROVED if decision == Decision.APPROVED.value else EventType.STEP_REJECTED,
            instance, execution, actor.id,
            detail={
                "step_number": execution.step_number,
                "step_name": execution.step_name,
                "decision": decision,
                "reason": reason,
            },
        )

        self.engine.advance(execution, actor.id)
        return execution

    # ------------------------------------------------------------------
    # reopen
    # ------------------------------------------------------------------

    def reopen(
        self,
        execution: WorkflowStepExecution,
        instance: WorkflowInstance,
        actor: User,
        reason: Optional[str],
    ) -> WorkflowStepExecution:
        reason = reason.strip() if reason else None
        if not reason:
            raise ValidationError("A reason is required to reopen", field="reason")
        if execution.status != StepStatus.COMPLETED.value:
            raise ConflictError(f"Only completed steps can be reopened (step is {execution.status})")
        if instance.status != WorkflowStatus.COMPLETED.value:
            raise ConflictError(f"Only completed workflows can be reopened (workflow is {instance.status})")
        if execution.superseded_at is not None:
            raise ConflictError(f"Step execution {execution.id} belongs to a superseded review round")
        if not (
            execution.decided_by == actor.id
            or self.directory.has_permission(actor, Permission.WORKFLOW_OVERRIDE)
            or self.directory.has_permission(actor, Permission.WORKFLOW_MANAGE)
        ):
            raise UnauthorizedError("Only the original reviewer or a workflow manager can reopen this step")

        active_key = WorkflowInstance.build_active_key(instance.company_id, instance.entity_type, instance.entity_id)
        competing = (
            self.db.query(WorkflowInstance.id)
            .filter(WorkflowInstance.active_key == active_key)
            .first()
        )
        if competing:
            raise ConflictError(
                f"Workflow instance {competing[0]} is already active for {instance.entity_type} {instance.entity_id}"
            )

        previous_decision = execution.decision
        previous_outcome = instance.outcome
        try:
            with self.db.begin_nested():
                self.engine.cas_instance(instance, (WorkflowStatus.COMPLETED.value,), {
                    "status": WorkflowStatus.IN_PROGRESS.value,
                    "outcome": None,
                    "completed_at": None,
                    "current_step_number": execution.step_number,
                    "active_key": active_key,
                })
        except IntegrityError:
            raise ConflictError(
                f"Another workflow became active for {instance.entity_type} {instance.entity_id}"
            )

        step = instance.step_definition(execution.step_number) or {}
        timeout_at = hours_from(utcnow(), step.get("timeout_hours"))
        self._rearm(execution, (StepStatus.COMPLETED.value,), timeout_at)

        # a parallel step is reviewed again by every participant
        rearmed = []
        if step.get("allow_parallel"):
            for sibling in self.engine.live_executions(instance, execution.step_number):
                if sibling.id == execution.id or sibling.status not in REARMABLE_STEP_STATUSES:
                    continue
                self._rearm(sibling, REARMABLE_STEP_STATUSES, timeout_at)
                rearmed.append(sibling)

        # later steps belong to the previous review round
        superseded = (
            self.db.query(WorkflowStepExecution)
            .filter(
                WorkflowStepExecution.instance_id == instance.id,
                WorkflowStepExecution.step_number > execution.step_number,
                WorkflowStepExecution.superseded_at.is_(None),
            )
            .update({"superseded_at": utcnow()}, synchronize_session=False)
        )

        logger.info(f"Workflow instance {instance.id} reopened at step {execution.step_number} by user {actor.id}")
        recipients = self.engine.recipients_for(execution)
        for sibling in rearmed:
            recipients.extend(self.engine.recipients_for(sibling))
        self.emitter.record(
            EventType.WORKFLOW_REOPENED, instance, execution, actor.id,
            detail={
                "step_number": execution.step_number,
                "step_name": execution.step_name,
                "title": instance.title,
                "reason": reason,
                "previous_decision": previous_decision,
                "previous_outcome": previous_outcome,
                "superseded_executions": superseded,
                "rearmed_executions": [s.id for s in rearmed],
            },
            recipients=recipients,
        )
        return execution

    def _rearm(self, execution: WorkflowStepExecution, expected, timeout_at) -> None:
        """Put a finished execution back in front of its assignee for a new review round"""
        self.engine.cas_execution(execution, tuple(expected), {
            "status": StepStatus.ASSIGNED.value,
            "decision": None,
            "notes": None,
            "decided_by": None,
            "completed_at": None,
            "acknowledged_at": None,
            "timeout_at": timeout_at,
        })

        approval = self.engine.approval_for(execution)
        if approval is not None:
            now = utcnow()
            approval.status = ApprovalStatus.PENDING.value
            approval.decision = None
            approval.decision_reason = None
            approval.reviewed_by = None
            approval.reviewed_at = None
            approval.completed_at = None
            approval.expires_at = timeout_at
            approval.reminder_level = 0
            approval.assigned_at = now

    # ------------------------------------------------------------------
    # comment
    # ------------------------------------------------------------------

    def comment(
        self,
        execution: WorkflowStepExecution,
        instance: WorkflowInstance,
        actor: User,
        body: Optional[str],
        is_internal: bool = False,
    ) -> ApprovalComment:
        body = body.strip() if body else None
        if not body:
            raise ValidationError("Comment text is required", field="comment")

        approval = self.engine.approval_for(execution)
        if approval is None:
            raise ValidationError(f"Step execution {execution.id} has no approval request to comment on")

        return self.add_comment(approval, instance, actor, body, is_internal, execution)

    def add_comment(self, approval, instance, actor: User, body: str, is_internal: bool, execution=None) -> ApprovalComment:
        if is_internal and not self.directory.has_permission(actor, Permission.APPROVAL_COMMENT_INTERNAL):
            raise UnauthorizedError("Internal comments are restricted to internal staff")

        comment = ApprovalComment(
            approval_request_id=approval.id,
            user_id=actor.id,
            comment=body,
            is_internal=is_internal,
            created_at=utcnow(),
        )
        self.db.add(comment)
        self.db.flush()

        recipients = [approval.assigned_to, approval.requested_by]
        self.emitter.record(
            EventType.COMMENT_ADDED, instance, execution, actor.id,
            detail={"approval_request_id": approval.id, "is_internal": is_internal, "title": approval.title},
            recipients=[r for r in recipients if r != actor.id],
        )
        return comment

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _load(self, execution_id: int, actor: User):
        execution = self.db.get(WorkflowStepExecution, execution_id)
        if execution is None:
            raise NotFoundError("Step execution", execution_id)
        instance = self.db.get(WorkflowInstance, execution.instance_id)
        if actor.user_type != SUPER_ADMIN and instance.company_id != actor.company_id:
            raise NotFoundError("Step execution", execution_id)
        return execution, instance

    def can_decide(self, execution: WorkflowStepExecution, actor: User) -> bool:
        if execution.assigned_to is not None:
            if execution.assigned_to == actor.id:
                return True
        elif execution.assigned_role_id is not None and self.directory.is_eligible(actor.id, execution.assigned_role_id):
            # holding the role is not enough to vote on its queue
            if self.directory.has_permission(actor, Permission.WORKFLOW_APPROVE):
                return True
        return self.directory.has_permission(actor, Permission.WORKFLOW_OVERRIDE)

    def _authorize(self, execution: WorkflowStepExecution, actor: User) -> None:
        if not self.can_decide(execution, actor):
            raise UnauthorizedError(f"User {actor.id} is not an assignee of step execution {execution.id}")
