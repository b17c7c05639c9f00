# =====================================================
# FILE: app/services/reassignment_service.py
# Reassignment, escalation and orphaned assignment handling
# =====================================================

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, EngineFailure, NotFoundError, UnauthorizedError, ValidationError
from app.core.permissions import Permission, SUPER_ADMIN
from app.models.approval import ApprovalComment, ApprovalStatus, OPEN_APPROVAL_STATUSES
from app.models.user import User
from app.models.workflow import (
    ACTIVE_STEP_STATUSES,
    AssigneeType,
    StepReassignment,
    StepStatus,
    WorkflowInstance,
    WorkflowStepExecution,
)
from app.services.notification_sink import EventType, WorkflowEventEmitter
from app.services.role_directory import RoleDirectory
from app.services.step_execution_engine import StepExecutionEngine
from app.utils.datetime_helpers import hours_from, utcnow

logger = logging.getLogger(__name__)

RELEASE_REASONS = ("user_deactivated", "user_deleted")


class ReassignmentManager:
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

    # ------------------------------------------------------------------
    # Manual reassignment
    # ------------------------------------------------------------------

    def reassign(
        self,
        execution_id: int,
        actor: Optional[User],
        reason: str,
        new_user_id: Optional[int] = None,
        new_role_id: Optional[int] = None,
    ) -> WorkflowStepExecution:
        """
        Move an active step execution to a different user or role.
        actor=None means the system is acting (no permission check).
        """
        execution = self.db.get(WorkflowStepExecution, execution_id)
        if execution is None:
            raise NotFoundError("Step execution", execution_id)
        instance = self.db.get(WorkflowInstance, execution.instance_id)
        if actor is not None and not self._same_company(actor, instance):
            raise NotFoundError("Step execution", execution_id)

        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reassign a step", field="reason")
        if (new_user_id is None) == (new_role_id is None):
            raise ValidationError("Provide exactly one of new_user_id or new_role_id", field="new_assignee")
        if execution.status not in ACTIVE_STEP_STATUSES:
            raise ConflictError(f"Step execution {execution.id} is {execution.status} and cannot be reassigned")

        if actor is not None and not self.can_reassign(actor, execution):
            raise UnauthorizedError("Only the current assignee or a workflow manager can reassign this step")

        if new_user_id is not None:
            if execution.assigned_to == new_user_id:
                raise ValidationError("Step is already assigned to this user", field="new_user_id")
            target = self.directory.get_user(new_user_id)
            if target is None or target.company_id != instance.company_id:
                raise NotFoundError("User", new_user_id)
            if not target.is_active:
                raise ValidationError(f"User {new_user_id} is not active", field="new_user_id")
            if target.id in self._sibling_owners(instance, execution):
                raise ValidationError(
                    f"User {new_user_id} already reviews this parallel step", field="new_user_id"
                )
            values = {
                "assigned_to": target.id,
                "assigned_role_id": None,
                "assignee_type": AssigneeType.USER.value,
                "assignee_name": target.full_name,
            }
        else:
            if execution.assigned_to is None and execution.assigned_role_id == new_role_id:
                raise ValidationError("Step is already assigned to this role", field="new_role_id")
            role = self.directory.get_role(new_role_id)
            if role is None or role.company_id not in (None, instance.company_id):
                raise NotFoundError("Role", new_role_id)
            if not role.is_active or not self.directory.resolve(role.id):
                raise ValidationError(f"Role '{role.role_name}' has no active members", field="new_role_id")
            values = {
                "assigned_to": None,
                "assigned_role_id": role.id,
                "assignee_type": AssigneeType.ROLE.value,
                "assignee_name": role.role_name,
            }

        return self._apply(
            execution,
            instance,
            values,
            reason=reason.strip(),
            actor_id=actor.id if actor is not None else None,
            is_escalation=False,
        )

    def can_reassign(self, actor: User, execution: WorkflowStepExecution) -> bool:
        if self.directory.has_permission(actor, Permission.WORKFLOW_MANAGE):
            return True
        if execution.assigned_to is not None:
            return execution.assigned_to == actor.id
        return execution.assigned_role_id is not None and self.directory.is_eligible(actor.id, execution.assigned_role_id)

    def _apply(
        self,
        execution: WorkflowStepExecution,
        instance: WorkflowInstance,
        values: dict,
        reason: str,
        actor_id: Optional[int],
        is_escalation: bool,
    ) -> WorkflowStepExecution:
        from_user_id = execution.assigned_to
        from_role_id = execution.assigned_role_id
        from_name = execution.assignee_name

        # guard on the old assignee too so a concurrent reassignment loses
        assignee_filter = (
            WorkflowStepExecution.assigned_to.is_(None)
            if from_user_id is None
            else WorkflowStepExecution.assigned_to == from_user_id
        )
        self.engine.cas_execution(execution, ACTIVE_STEP_STATUSES, values, extra_filters=[assignee_filter])

        record = StepReassignment(
            step_execution_id=execution.id,
            from_user_id=from_user_id,
            from_role_id=from_role_id,
            to_user_id=execution.assigned_to,
            to_role_id=execution.assigned_role_id,
            reason=reason,
            reassigned_by=actor_id,
            is_escalation=is_escalation,
            created_at=utcnow(),
        )
        self.db.add(record)

        approval = self.engine.approval_for(execution)
        if approval is not None:
            approval.assigned_to = execution.assigned_to
            approval.assigned_role_id = execution.assigned_role_id
            approval.orphaned = False
            approval.orphaned_at = None
            self.db.add(ApprovalComment(
                approval_request_id=approval.id,
                user_id=actor_id,
                comment=f"Reassigned from {from_name or 'unassigned'} to {execution.assignee_name}: {reason}",
                is_internal=True,
                created_at=utcnow(),
            ))

        self.db.flush()
        logger.info(
            f"Step execution {execution.id} reassigned from {from_name} to {execution.assignee_name}"
        )
        self.emitter.record(
            EventType.STEP_REASSIGNED, instance, execution, actor_id,
            detail={
                "step_name": execution.step_name,
                "title": instance.title,
                "from_user_id": from_user_id,
                "from_role_id": from_role_id,
                "to_user_id": execution.assigned_to,
                "to_role_id": execution.assigned_role_id,
                "reason": reason,
            },
            recipients=self.engine.recipients_for(execution),
        )
        return execution

    def history(self, execution_id: int, actor: User) -> List[StepReassignment]:
        execution = self.db.get(WorkflowStepExecution, execution_id)
        if execution is None or not self._same_company(actor, self.db.get(WorkflowInstance, execution.instance_id)):
            raise NotFoundError("Step execution", execution_id)

        # an escalated execution keeps the history of the one it replaced
        chain = [execution.id]
        current = execution
        while current.escalated_from_id:
            chain.append(current.escalated_from_id)
            current = self.db.get(WorkflowStepExecution, current.escalated_from_id)
        return (
            self.db.query(StepReassignment)
            .filter(StepReassignment.step_execution_id.in_(chain))
            .order_by(StepReassignment.created_at, StepReassignment.id)
            .all()
        )

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def can_escalate(self, execution: WorkflowStepExecution) -> bool:
        instance = self.db.get(WorkflowInstance, execution.instance_id)
        step = instance.step_definition(execution.step_number) or {}
        return bool(
            instance.is_active
            and step.get("escalation_assignee_id")
            and (execution.escalation_level or 0) == 0
        )

    def escalate(self, execution: WorkflowStepExecution) -> Optional[WorkflowStepExecution]:
        """
        Hand a timed-out execution to the step's escalation target.
        Returns None when the target cannot take the step.
        """
        instance = self.db.get(WorkflowInstance, execution.instance_id)
        step = instance.step_definition(execution.step_number)

        try:
            assignments = self.engine.resolve_assignments(
                instance,
                step.get("escalation_assignee_type") or AssigneeType.USER.value,
                step["escalation_assignee_id"],
                allow_parallel=False,
            )
        except EngineFailure as e:
            logger.warning(f"Escalation target unusable for execution {execution.id}: {e.message}")
            return None

        assigned_to, role_id, name, orphaned = assignments[0]
        escalated = WorkflowStepExecution(
            instance_id=instance.id,
            step_number=execution.step_number,
            step_name=execution.step_name,
            step_type=execution.step_type,
            is_required=execution.is_required,
            status=StepStatus.ASSIGNED.value,
            assignee_type=AssigneeType.ROLE.value if assigned_to is None else AssigneeType.USER.value,
            assigned_to=assigned_to,
            assigned_role_id=role_id,
            assignee_name=name,
            escalation_level=(execution.escalation_level or 0) + 1,
            escalated_from_id=execution.id,
            started_at=utcnow(),
            timeout_at=hours_from(utcnow(), step.get("timeout_hours")),
        )
        self.db.add(escalated)
        self.db.flush()

        # the reviewer-facing request follows the step to its new owner
        approval = self.engine.approval_for(execution)
        if approval is not None:
            approval.step_execution_id = escalated.id
            approval.assigned_to = assigned_to
            approval.assigned_role_id = role_id
            approval.status = ApprovalStatus.PENDING.value
            approval.completed_at = None
            approval.expires_at = escalated.timeout_at
            approval.reminder_level = 0
            approval.assigned_at = utcnow()
            approval.orphaned = orphaned
            approval.orphaned_at = utcnow() if orphaned else None
        else:
            self.engine.create_approval_request(instance, escalated, step, orphaned)

        reason = f"Escalated after {step.get('timeout_hours')}h without a decision"
        self.db.add(StepReassignment(
            step_execution_id=escalated.id,
            from_user_id=execution.assigned_to,
            from_role_id=execution.assigned_role_id,
            to_user_id=assigned_to,
            to_role_id=role_id,
            reason=reason,
            reassigned_by=None,
            is_escalation=True,
            created_at=utcnow(),
        ))
        self.db.flush()

        logger.info(f"Step execution {execution.id} escalated to {name} as execution {escalated.id}")
        self.emitter.record(
            EventType.STEP_ESCALATED, instance, escalated, None,
            detail={
                "step_number": execution.step_number,
                "step_name": execution.step_name,
                "title": instance.title,
                "escalated_from": execution.id,
                "reason": reason,
            },
            recipients=self.engine.recipients_for(escalated),
        )
        return escalated

    # ------------------------------------------------------------------
    # Orphaned assignments
    # ------------------------------------------------------------------

    def release_user_assignments(self, user_id: int, reason: str, actor: Optional[User] = None) -> dict:
        """Move every active step assigned to a departing user to a colleague holding the same role"""
        if reason not in RELEASE_REASONS:
            raise ValidationError(f"Reason must be one of {', '.join(RELEASE_REASONS)}", field="reason")

        user = self.directory.get_user(user_id)
        if user is None or (actor is not None and actor.company_id != user.company_id):
            raise NotFoundError("User", user_id)

        executions = (
            self.db.query(WorkflowStepExecution)
            .filter(
                WorkflowStepExecution.assigned_to == user_id,
                WorkflowStepExecution.status.in_(ACTIVE_STEP_STATUSES),
            )
            .order_by(WorkflowStepExecution.id)
            .all()
        )

        reassigned, orphaned = [], []
        candidates = [
            holder for holder in (self.directory.resolve(user.role_id) if user.role_id else [])
            if holder != user_id
        ]

        for execution in executions:
            instance = self.db.get(WorkflowInstance, execution.instance_id)
            owners = self._sibling_owners(instance, execution)
            available = [holder for holder in candidates if holder not in owners]
            if available:
                target = self.directory.get_user(available[0])
                self._apply(
                    execution,
                    instance,
                    {
                        "assigned_to": target.id,
                        "assignee_type": AssigneeType.USER.value,
                        "assignee_name": target.full_name,
                    },
                    reason=f"Previous assignee released ({reason})",
                    actor_id=actor.id if actor is not None else None,
                    is_escalation=False,
                )
                reassigned.append(execution.id)
                continue

            approval = self.engine.approval_for(execution)
            if approval is not None and approval.status in OPEN_APPROVAL_STATUSES:
                approval.orphaned = True
                approval.orphaned_at = utcnow()
            logger.warning(f"Step execution {execution.id} orphaned: no other eligible holder of role {user.role_id}")
            self.emitter.record(
                EventType.APPROVAL_ORPHANED, instance, execution, actor.id if actor is not None else None,
                detail={"step_name": execution.step_name, "title": instance.title, "reason": reason},
                recipients=self._managers(instance.company_id),
            )
            orphaned.append(execution.id)

        self.db.flush()
        return {"reassigned": reassigned, "orphaned": orphaned}

    def _sibling_owners(self, instance: WorkflowInstance, execution: WorkflowStepExecution) -> set:
        """Users already holding a vote on the same step; one vote per person on a parallel step"""
        return {
            sibling.assigned_to
            for sibling in self.engine.live_executions(instance, execution.step_number)
            if sibling.id != execution.id and sibling.assigned_to is not None
        }

    def _managers(self, company_id: int) -> List[int]:
        users = (
            self.db.query(User)
            .filter(User.company_id == company_id, User.is_active == True)
            .all()
        )
        return [u.id for u in users if self.directory.has_permission(u, Permission.WORKFLOW_MANAGE)]

    @staticmethod
    def _same_company(actor: User, instance: WorkflowInstance) -> bool:
        return instance is not None and (actor.user_type == SUPER_ADMIN or actor.company_id == instance.company_id)
