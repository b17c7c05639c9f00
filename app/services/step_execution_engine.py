# =====================================================
# FILE: app/services/step_execution_engine.py
# Step state machine and instance advance algorithm
# =====================================================

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.exceptions import AlreadyDecidedError, ConflictError, EngineFailure
from app.models.approval import ApprovalRequest, ApprovalStatus, OPEN_APPROVAL_STATUSES
from app.models.workflow import (
    ACTIVE_INSTANCE_STATUSES,
    ACTIVE_STEP_STATUSES,
    OPEN_STEP_STATUSES,
    AssigneeType,
    Decision,
    ParallelPolicy,
    StepStatus,
    StepType,
    TimeoutAction,
    WorkflowInstance,
    WorkflowOutcome,
    WorkflowStatus,
    WorkflowStepExecution,
)
from app.services.condition_matcher import ConditionMatcher
from app.services.notification_sink import EventType, WorkflowEventEmitter
from app.services.role_directory import RoleDirectory
from app.utils.datetime_helpers import hours_from, utcnow

logger = logging.getLogger(__name__)

# Result of activating one step
WAITING = "waiting"
NEXT = "next"
TERMINATED = "terminated"


class StepExecutionEngine:
    """
    Drives step executions through
    pending -> assigned -> in_progress -> completed | skipped | failed | timeout
    and advances or terminates the parent instance.

    Every status write is a compare-and-swap on the expected
    pre-state; losing a race raises ConflictError.
    """

    def __init__(self, db: Session, directory: RoleDirectory, emitter: WorkflowEventEmitter):
        self.db = db
        self.directory = directory
        self.emitter = emitter

    # ------------------------------------------------------------------
    # Compare-and-swap helpers
    # ------------------------------------------------------------------

    def cas_instance(self, instance: WorkflowInstance, expected: Tuple[str, ...], values: Dict) -> None:
        self.db.flush()
        rows = (
            self.db.query(WorkflowInstance)
            .filter(WorkflowInstance.id == instance.id, WorkflowInstance.status.in_(expected))
            .update(values, synchronize_session=False)
        )
        if rows != 1:
            raise ConflictError(f"Workflow instance {instance.id} was modified concurrently")
        self.db.refresh(instance)

    def cas_execution(
        self,
        execution: WorkflowStepExecution,
        expected: Tuple[str, ...],
        values: Dict,
        extra_filters: Optional[List] = None,
    ) -> None:
        self.db.flush()
        query = self.db.query(WorkflowStepExecution).filter(
            WorkflowStepExecution.id == execution.id,
            WorkflowStepExecution.status.in_(expected),
        )
        for criterion in extra_filters or []:
            query = query.filter(criterion)
        rows = query.update(values, synchronize_session=False)
        if rows != 1:
            current = (
                self.db.query(WorkflowStepExecution.status)
                .filter(WorkflowStepExecution.id == execution.id)
                .scalar()
            )
            if current == StepStatus.COMPLETED.value:
                raise AlreadyDecidedError(execution.id)
            raise ConflictError(f"Step execution {execution.id} was modified concurrently")
        self.db.refresh(execution)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def activate_from(self, instance: WorkflowInstance, step_number: Optional[int], actor_id: Optional[int] = None) -> None:
        """Activate step_number and keep going until a step waits for a human or the instance ends"""
        while instance.is_active:
            if step_number is None:
                self.complete_instance(instance, actor_id)
                return

            step = instance.step_definition(step_number)
            try:
                result = self._activate_step(instance, step, actor_id)
            except EngineFailure as e:
                self.fail_instance(instance, step, e.message, actor_id)
                return

            if result != NEXT:
                return
            step_number = instance.next_step_number(step_number)

    def _activate_step(self, instance: WorkflowInstance, step: Dict, actor_id: Optional[int]) -> str:
        values = {"current_step_number": step["step_number"]}
        if instance.status == WorkflowStatus.PENDING.value:
            values["status"] = WorkflowStatus.IN_PROGRESS.value
        self.cas_instance(instance, ACTIVE_INSTANCE_STATUSES, values)

        step_type = step["step_type"]
        conditions = step.get("conditions")

        if step_type == StepType.CONDITION.value:
            return self._run_condition_step(instance, step, actor_id)

        if conditions and not ConditionMatcher.matches(conditions, instance.snapshot, instance.entity_type):
            execution = self._new_execution(instance, step, StepStatus.SKIPPED.value)
            execution.completed_at = utcnow()
            logger.info(f"Step {step['step_number']} of instance {instance.id} skipped: conditions not met")
            self.emitter.record(
                EventType.STEP_SKIPPED, instance, execution, actor_id,
                detail={"step_number": step["step_number"], "step_name": step["name"], "reason": "conditions_not_met"},
            )
            return NEXT

        if step_type == StepType.NOTIFICATION.value:
            return self._run_notification_step(instance, step, actor_id)

        return self._assign_human_step(instance, step, actor_id)

    def _run_condition_step(self, instance: WorkflowInstance, step: Dict, actor_id: Optional[int]) -> str:
        matched = ConditionMatcher.matches(step.get("conditions"), instance.snapshot, instance.entity_type)
        execution = self._new_execution(instance, step, StepStatus.COMPLETED.value)
        execution.decision = Decision.APPROVED.value if matched else Decision.REJECTED.value
        execution.notes = "Conditions met" if matched else "Conditions not met"
        execution.completed_at = utcnow()

        self.emitter.record(
            EventType.STEP_APPROVED if matched else EventType.STEP_REJECTED,
            instance, execution, actor_id,
            detail={"step_number": step["step_number"], "step_name": step["name"], "automatic": True},
        )

        if not matched and step["is_required"]:
            self.terminate_instance(instance, WorkflowOutcome.REJECTED.value, actor_id, reason=execution.notes)
            return TERMINATED
        return NEXT

    def _run_notification_step(self, instance: WorkflowInstance, step: Dict, actor_id: Optional[int]) -> str:
        recipients: List[int] = []
        if step["assignee_type"] == AssigneeType.ROLE.value:
            recipients = self.directory.resolve(step["assignee_id"])
        elif step["assignee_id"] is not None:
            user = self.directory.get_user(step["assignee_id"])
            if user and user.is_active:
                recipients = [user.id]

        if not recipients:
            logger.warning(f"Notification step {step['step_number']} of instance {instance.id} has no recipients")

        execution = self._new_execution(instance, step, StepStatus.COMPLETED.value)
        execution.completed_at = utcnow()
        self.emitter.record(
            EventType.STEP_NOTIFICATION, instance, execution, actor_id,
            detail={"step_number": step["step_number"], "step_name": step["name"], "title": instance.title},
            recipients=recipients,
        )
        return NEXT

    def _assign_human_step(self, instance: WorkflowInstance, step: Dict, actor_id: Optional[int]) -> str:
        assignments = self.resolve_assignments(instance, step["assignee_type"], step["assignee_id"], step["allow_parallel"])
        timeout_at = hours_from(utcnow(), step.get("timeout_hours"))

        executions = []
        for assigned_to, role_id, name, orphaned in assignments:
            execution = self._new_execution(instance, step, StepStatus.ASSIGNED.value)
            execution.assignee_type = AssigneeType.ROLE.value if role_id and assigned_to is None else AssigneeType.USER.value
            execution.assigned_to = assigned_to
            execution.assigned_role_id = role_id
            execution.assignee_name = name
            execution.timeout_at = timeout_at
            self.db.flush()

            self.create_approval_request(instance, execution, step, orphaned)
            self.emitter.record(
                EventType.STEP_ASSIGNED, instance, execution, actor_id,
                detail={
                    "step_number": step["step_number"],
                    "step_name": step["name"],
                    "title": instance.title,
                    "assignee": name,
                    "timeout_at": timeout_at.isoformat() if timeout_at else None,
                },
                recipients=self.recipients_for(execution),
            )
            if orphaned:
                self.emitter.record(
                    EventType.APPROVAL_ORPHANED, instance, execution, actor_id,
                    detail={"step_name": step["name"], "reason": "role_has_no_active_members", "title": instance.title},
                )
            executions.append(execution)

        logger.info(
            f"Instance {instance.id} step {step['step_number']} assigned to "
            f"{[e.assignee_name for e in executions]}"
        )

        if not step.get("auto_approve"):
            return WAITING

        for execution in executions:
            self.cas_execution(execution, ACTIVE_STEP_STATUSES, {
                "status": StepStatus.COMPLETED.value,
                "decision": Decision.APPROVED.value,
                "notes": "Auto-approved",
                "completed_at": utcnow(),
            })
            self.close_approval_request(execution, ApprovalStatus.APPROVED.value, Decision.APPROVED.value, "Auto-approved")
            self.emitter.record(
                EventType.STEP_APPROVED, instance, execution, actor_id,
                detail={"step_number": step["step_number"], "step_name": step["name"], "auto_approved": True},
            )
        return NEXT

    def resolve_assignments(self, instance: WorkflowInstance, assignee_type: str, assignee_id: Optional[int], allow_parallel: bool):
        """
        Returns [(assigned_to, assigned_role_id, display_name, orphaned)].
        Raises EngineFailure when the configured assignee is unusable.
        """
        if assignee_type == AssigneeType.ROLE.value:
            role = self.directory.get_role(assignee_id)
            if role is None or not role.is_active or (role.company_id not in (None, instance.company_id)):
                raise EngineFailure(f"Assigned role {assignee_id} no longer exists")

            holders = self.directory.resolve(role.id)
            if allow_parallel:
                if not holders:
                    raise EngineFailure(f"Role '{role.role_name}' has no active members for a parallel step")
                return [
                    (user_id, role.id, self.directory.display_name(user_id=user_id), False)
                    for user_id in holders
                ]
            return [(None, role.id, role.role_name, not holders)]

        user = self.directory.get_user(assignee_id)
        if user is None or not user.is_active or user.company_id != instance.company_id:
            raise EngineFailure(f"Assigned user {assignee_id} no longer exists or is inactive")
        return [(user.id, None, user.full_name, False)]

    def _new_execution(self, instance: WorkflowInstance, step: Dict, status: str) -> WorkflowStepExecution:
        execution = WorkflowStepExecution(
            instance_id=instance.id,
            step_number=step["step_number"],
            step_name=step["name"],
            step_type=step["step_type"],
            is_required=step["is_required"],
            status=status,
            assignee_type=step["assignee_type"],
            escalation_level=0,
            started_at=utcnow(),
        )
        self.db.add(execution)
        self.db.flush()
        return execution

    # ------------------------------------------------------------------
    # Approval request projection
    # ------------------------------------------------------------------

    def create_approval_request(
        self,
        instance: WorkflowInstance,
        execution: WorkflowStepExecution,
        step: Dict,
        orphaned: bool = False,
    ) -> ApprovalRequest:
        now = utcnow()
        approval = ApprovalRequest(
            company_id=instance.company_id,
            workflow_instance_id=instance.id,
            step_execution_id=execution.id,
            request_type=instance.request_type or "approve",
            entity_type=instance.entity_type,
            entity_id=instance.entity_id,
            title=instance.title or f"{step['name']}: {instance.entity_type} {instance.entity_id}",
            description=step.get("description") or instance.description,
            data=instance.snapshot,
            status=ApprovalStatus.PENDING.value,
            priority=instance.priority or "Medium",
            requested_by=instance.triggered_by,
            assigned_to=execution.assigned_to,
            assigned_role_id=execution.assigned_role_id,
            requested_at=now,
            assigned_at=now,
            expires_at=execution.timeout_at,
            orphaned=orphaned,
            orphaned_at=now if orphaned else None,
            reminder_level=0,
        )
        self.db.add(approval)
        self.db.flush()
        return approval

    def approval_for(self, execution: WorkflowStepExecution) -> Optional[ApprovalRequest]:
        return (
            self.db.query(ApprovalRequest)
            .filter(ApprovalRequest.step_execution_id == execution.id)
            .first()
        )

    def close_approval_request(
        self,
        execution: WorkflowStepExecution,
        status: str,
        decision: Optional[str] = None,
        reason: Optional[str] = None,
        reviewed_by: Optional[int] = None,
    ) -> None:
        approval = self.approval_for(execution)
        if approval is None:
            return
        now = utcnow()
        approval.status = status
        approval.decision = decision
        approval.decision_reason = reason
        approval.completed_at = now
        if reviewed_by is not None:
            approval.reviewed_by = reviewed_by
            approval.reviewed_at = now

    def recipients_for(self, execution: WorkflowStepExecution) -> List[int]:
        if execution.assigned_to is not None:
            return [execution.assigned_to]
        if execution.assigned_role_id is not None:
            return self.directory.resolve(execution.assigned_role_id)
        return []

    # ------------------------------------------------------------------
    # Advance
    # ------------------------------------------------------------------

    def live_executions(self, instance: WorkflowInstance, step_number: int) -> List[WorkflowStepExecution]:
        """Executions of a step that still count: not superseded, not replaced by an escalation"""
        executions = (
            self.db.query(WorkflowStepExecution)
            .filter(
                WorkflowStepExecution.instance_id == instance.id,
                WorkflowStepExecution.step_number == step_number,
                WorkflowStepExecution.superseded_at.is_(None),
            )
            .order_by(WorkflowStepExecution.id)
            .all()
        )
        replaced = {e.escalated_from_id for e in executions if e.escalated_from_id}
        return [e for e in executions if e.id not in replaced]

    def advance(self, execution: WorkflowStepExecution, actor_id: Optional[int] = None) -> None:
        """Apply the effect of a step execution reaching a terminal state"""
        instance = self.db.get(WorkflowInstance, execution.instance_id)
        self.db.refresh(instance)
        if not instance.is_active:
            return

        step = instance.step_definition(execution.step_number)
        siblings = self.live_executions(instance, execution.step_number)
        open_siblings = [e for e in siblings if e.status in OPEN_STEP_STATUSES]
        required = step["is_required"]

        if required and self._is_rejection(instance, execution):
            outcome = (
                WorkflowOutcome.TIMEOUT.value
                if execution.status == StepStatus.TIMEOUT.value
                else WorkflowOutcome.REJECTED.value
            )
            self.terminate_instance(instance, outcome, actor_id, reason=execution.notes)
            return

        if open_siblings:
            logger.info(
                f"Instance {instance.id} step {execution.step_number} waiting on "
                f"{len(open_siblings)} parallel execution(s)"
            )
            return

        if len(siblings) > 1 and not required:
            self._record_parallel_resolution(instance, step, siblings, actor_id)

        self.activate_from(instance, instance.next_step_number(execution.step_number), actor_id)

    def _is_rejection(self, instance: WorkflowInstance, execution: WorkflowStepExecution) -> bool:
        if execution.status == StepStatus.COMPLETED.value:
            return execution.decision == Decision.REJECTED.value
        if execution.status == StepStatus.TIMEOUT.value:
            return (instance.timeout_action or TimeoutAction.REJECT.value) == TimeoutAction.REJECT.value
        return False

    def _record_parallel_resolution(self, instance: WorkflowInstance, step: Dict, siblings, actor_id) -> str:
        approvals = sum(1 for e in siblings if e.decision == Decision.APPROVED.value)
        rejections = sum(
            1 for e in siblings
            if e.decision == Decision.REJECTED.value or e.status == StepStatus.TIMEOUT.value
        )
        policy = instance.parallel_policy or ParallelPolicy.ANY.value

        if policy == ParallelPolicy.MAJORITY.value:
            approved = approvals > rejections
        else:
            approved = approvals >= 1

        outcome = Decision.APPROVED.value if approved else Decision.REJECTED.value
        logger.info(
            f"Instance {instance.id} optional parallel step {step['step_number']} resolved "
            f"{outcome} under '{policy}' ({approvals} approved, {rejections} rejected)"
        )
        self.emitter.record(
            EventType.STEP_APPROVED if approved else EventType.STEP_REJECTED,
            instance, None, actor_id,
            detail={
                "step_number": step["step_number"],
                "step_name": step["name"],
                "parallel_policy": policy,
                "approvals": approvals,
                "rejections": rejections,
                "resolution": outcome,
            },
        )
        return outcome

    # ------------------------------------------------------------------
    # Instance terminal transitions
    # ------------------------------------------------------------------

    def complete_instance(self, instance: WorkflowInstance, actor_id: Optional[int] = None) -> None:
        self.cas_instance(instance, ACTIVE_INSTANCE_STATUSES, {
            "status": WorkflowStatus.COMPLETED.value,
            "outcome": WorkflowOutcome.APPROVED.value,
            "completed_at": utcnow(),
            "active_key": None,
        })
        logger.info(f"Workflow instance {instance.id} completed (approved)")
        self.emitter.record(
            EventType.WORKFLOW_COMPLETED, instance, None, actor_id,
            detail={"title": instance.title, "outcome": instance.outcome},
            recipients=[instance.triggered_by],
        )

    def terminate_instance(
        self,
        instance: WorkflowInstance,
        outcome: str,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        """End an instance early with a rejected or timeout outcome"""
        self.cas_instance(instance, ACTIVE_INSTANCE_STATUSES, {
            "status": WorkflowStatus.COMPLETED.value,
            "outcome": outcome,
            "completed_at": utcnow(),
            "active_key": None,
        })
        self.skip_open_executions(instance, ApprovalStatus.CANCELLED.value)
        logger.info(f"Workflow instance {instance.id} terminated with outcome {outcome}")

        event_type = EventType.WORKFLOW_TIMED_OUT if outcome == WorkflowOutcome.TIMEOUT.value else EventType.WORKFLOW_REJECTED
        self.emitter.record(
            event_type, instance, None, actor_id,
            detail={"title": instance.title, "outcome": outcome, "reason": reason},
            recipients=[instance.triggered_by],
        )

    def cancel_instance(self, instance: WorkflowInstance, actor_id: Optional[int], reason: Optional[str] = None) -> None:
        now = utcnow()
        self.cas_instance(instance, ACTIVE_INSTANCE_STATUSES, {
            "status": WorkflowStatus.CANCELLED.value,
            "cancelled_at": now,
            "cancelled_by": actor_id,
            "cancel_reason": reason,
            "active_key": None,
        })
        skipped = self.skip_open_executions(instance, ApprovalStatus.CANCELLED.value)
        logger.info(f"Workflow instance {instance.id} cancelled by user {actor_id}")
        self.emitter.record(
            EventType.WORKFLOW_CANCELLED, instance, None, actor_id,
            detail={"title": instance.title, "reason": reason, "skipped_executions": skipped},
            recipients=[instance.triggered_by],
        )

    def fail_instance(self, instance: WorkflowInstance, step: Dict, reason: str, actor_id: Optional[int] = None) -> None:
        logger.error(f"Workflow instance {instance.id} failed at step {step['step_number']}: {reason}")

        execution = self._new_execution(instance, step, StepStatus.FAILED.value)
        execution.notes = reason
        execution.completed_at = utcnow()
        self.emitter.record(
            EventType.STEP_FAILED, instance, execution, actor_id,
            detail={"step_number": step["step_number"], "step_name": step["name"], "reason": reason},
        )

        self.cas_instance(instance, ACTIVE_INSTANCE_STATUSES, {
            "status": WorkflowStatus.FAILED.value,
            "failed_at": utcnow(),
            "failure_reason": reason,
            "active_key": None,
        })
        self.skip_open_executions(instance, ApprovalStatus.CANCELLED.value)
        self.emitter.record(
            EventType.WORKFLOW_FAILED, instance, None, actor_id,
            detail={"title": instance.title, "reason": reason, "step_number": step["step_number"]},
        )

    def skip_open_executions(self, instance: WorkflowInstance, approval_status: str) -> int:
        open_executions = (
            self.db.query(WorkflowStepExecution)
            .filter(
                WorkflowStepExecution.instance_id == instance.id,
                WorkflowStepExecution.status.in_(OPEN_STEP_STATUSES),
            )
            .all()
        )
        now = utcnow()
        for execution in open_executions:
            rows = (
                self.db.query(WorkflowStepExecution)
                .filter(
                    WorkflowStepExecution.id == execution.id,
                    WorkflowStepExecution.status.in_(OPEN_STEP_STATUSES),
                )
                .update({"status": StepStatus.SKIPPED.value, "completed_at": now}, synchronize_session=False)
            )
            if rows:
                self.db.refresh(execution)
                approval = self.approval_for(execution)
                if approval is not None and approval.status in OPEN_APPROVAL_STATUSES:
                    approval.status = approval_status
                    approval.completed_at = now
        return len(open_executions)

    # ------------------------------------------------------------------
    # Timeout
    # ------------------------------------------------------------------

    def expire(self, execution: WorkflowStepExecution, now=None) -> None:
        """Mark an overdue execution timed out"""
        now = now or utcnow()
        self.cas_execution(
            execution,
            ACTIVE_STEP_STATUSES,
            {"status": StepStatus.TIMEOUT.value, "completed_at": now, "notes": "Timed out without a decision"},
            extra_filters=[WorkflowStepExecution.timeout_at <= now],
        )
        approval = self.approval_for(execution)
        if approval is not None and approval.status in OPEN_APPROVAL_STATUSES:
            approval.status = ApprovalStatus.EXPIRED.value
            approval.completed_at = now

        instance = self.db.get(WorkflowInstance, execution.instance_id)
        logger.info(f"Step execution {execution.id} of instance {instance.id} timed out")
        self.emitter.record(
            EventType.STEP_TIMED_OUT, instance, execution, None,
            detail={"step_number": execution.step_number, "step_name": execution.step_name},
        )
