# =====================================================
# FILE: app/services/approval_service.py
# Approval requests: ad-hoc creation, listing, review, reminders
# =====================================================

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.core.exceptions import NotFoundError, UnauthorizedError, ValidationError
from app.core.permissions import Permission, SUPER_ADMIN
from app.models.approval import (
    ApprovalComment,
    ApprovalRequest,
    ApprovalStatus,
    OPEN_APPROVAL_STATUSES,
    PRIORITY_ORDER,
)
from app.models.user import User
from app.models.workflow import AssigneeType, StepType, WorkflowInstance
from app.services.decision_processor import DecisionProcessor
from app.services.entity_events import ENTITY_TYPES, EntityEvent
from app.services.notification_sink import EventType, WorkflowEventEmitter
from app.services.reassignment_service import ReassignmentManager
from app.services.role_directory import RoleDirectory
from app.services.workflow_instantiator import WorkflowInstantiator
from app.utils.datetime_helpers import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

REVIEW_DECISIONS = {
    "approved": "approve",
    "rejected": "reject",
    "reopen": "reopen",
}


class ApprovalService:
    """
    Reviewer-facing approval requests.

    Ad-hoc requests are template-less workflow instances with a single
    approval step, so they share the step state machine, timeouts and
    the single-active-instance rule with templated workflows.
    """

    def __init__(
        self,
        db: Session,
        directory: RoleDirectory,
        emitter: WorkflowEventEmitter,
        instantiator: WorkflowInstantiator,
        decisions: DecisionProcessor,
        reassignments: ReassignmentManager,
    ):
        self.db = db
        self.directory = directory
        self.emitter = emitter
        self.instantiator = instantiator
        self.decisions = decisions
        self.reassignments = reassignments

    # =====================================================
    # Create
    # =====================================================

    def create_approval_request(
        self,
        actor: User,
        entity_type: str,
        entity_id: str,
        title: str,
        request_type: str = "approve",
        description: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        priority: str = "Medium",
        assigned_to: Optional[int] = None,
        assigned_role_id: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> ApprovalRequest:
        if not self.directory.has_permission(actor, Permission.APPROVAL_CREATE):
            raise UnauthorizedError("Creating approval requests requires the approval.create permission")
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(f"Unknown entity type '{entity_type}'", field="entity_type")
        if not title or not title.strip():
            raise ValidationError("Title is required", field="title")
        if (assigned_to is None) == (assigned_role_id is None):
            raise ValidationError("Assign the request to exactly one user or role", field="assigned_to")

        if assigned_to is not None:
            user = self.directory.get_user(assigned_to)
            if user is None or user.company_id != actor.company_id:
                raise NotFoundError("User", assigned_to)
            if not user.is_active:
                raise ValidationError(f"User {assigned_to} is not active", field="assigned_to")
        else:
            role = self.directory.get_role(assigned_role_id)
            if role is None or role.company_id not in (None, actor.company_id) or not role.is_active:
                raise NotFoundError("Role", assigned_role_id)

        timeout_hours = None
        if expires_at is not None:
            expires_at = to_naive_utc(expires_at)
            remaining = (expires_at - utcnow()).total_seconds() / 3600
            if remaining <= 0:
                raise ValidationError("Expiry must be in the future", field="expires_at")
            timeout_hours = remaining

        step = {
            "step_number": 1,
            "name": title.strip(),
            "description": description,
            "step_type": StepType.APPROVAL.value,
            "assignee_type": AssigneeType.USER.value if assigned_to is not None else AssigneeType.ROLE.value,
            "assignee_id": assigned_to if assigned_to is not None else assigned_role_id,
            "is_required": True,
            "timeout_hours": timeout_hours,
            "auto_approve": False,
            "allow_parallel": False,
            "conditions": None,
            "escalation_assignee_type": None,
            "escalation_assignee_id": None,
        }
        event = EntityEvent(
            entity_type=entity_type,
            entity_id=str(entity_id),
            operation="manual",
            company_id=actor.company_id,
            snapshot=data or {},
            actor_user_id=actor.id,
        )
        instance = self.instantiator.instantiate_steps(
            event,
            [step],
            title=title.strip(),
            description=description,
            priority=priority,
            request_type=request_type,
        )

        approval = (
            self.db.query(ApprovalRequest)
            .filter(ApprovalRequest.workflow_instance_id == instance.id)
            .order_by(ApprovalRequest.id)
            .first()
        )
        logger.info(f"Approval request {approval.id} created for {entity_type} {entity_id} by user {actor.id}")
        return approval

    # =====================================================
    # Queries
    # =====================================================

    def get_approval(self, approval_id: int, actor: User) -> ApprovalRequest:
        approval = self.db.get(ApprovalRequest, approval_id)
        if approval is None or (actor.user_type != SUPER_ADMIN and approval.company_id != actor.company_id):
            raise NotFoundError("Approval request", approval_id)
        return approval

    def list_approval_requests(
        self,
        actor: User,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        entity_type: Optional[str] = None,
        mine: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ApprovalRequest], int]:
        query = self.db.query(ApprovalRequest).filter(ApprovalRequest.company_id == actor.company_id)
        if status:
            query = query.filter(ApprovalRequest.status == status)
        if priority:
            query = query.filter(ApprovalRequest.priority == priority)
        if entity_type:
            query = query.filter(ApprovalRequest.entity_type == entity_type)
        if mine:
            query = query.filter(self._assigned_to_filter(actor))

        total = query.count()
        items = (
            query.order_by(ApprovalRequest.requested_at.desc(), ApprovalRequest.id.desc())
            .offset(max(offset, 0))
            .limit(min(max(limit, 1), MAX_PAGE_SIZE))
            .all()
        )
        return items, total

    def get_pending_approvals(self, actor: User) -> List[ApprovalRequest]:
        """Open requests the user can act on, most urgent and oldest first"""
        approvals = (
            self.db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.company_id == actor.company_id,
                ApprovalRequest.status.in_(OPEN_APPROVAL_STATUSES),
                ApprovalRequest.orphaned == False,
                self._assigned_to_filter(actor),
            )
            .all()
        )
        return sorted(
            approvals,
            key=lambda a: (PRIORITY_ORDER.get(a.priority, len(PRIORITY_ORDER)), a.requested_at, a.id),
        )

    def get_approval_metrics(self, company_id: int) -> Dict[str, Any]:
        approvals = self.db.query(ApprovalRequest).filter(ApprovalRequest.company_id == company_id).all()

        total = len(approvals)
        pending = sum(1 for a in approvals if a.status == ApprovalStatus.PENDING.value)
        approved = sum(1 for a in approvals if a.decision == "approved")
        rejected = sum(1 for a in approvals if a.decision == "rejected")

        completed = [a for a in approvals if a.completed_at and a.requested_at]
        resolution_hours = [
            (a.completed_at - a.requested_at).total_seconds() / 3600 for a in completed
        ]
        avg_resolution = sum(resolution_hours) / len(resolution_hours) if resolution_hours else 0
        completion_rate = (approved + rejected) / total * 100 if total else 0

        by_priority = {
            level: sum(1 for a in approvals if a.priority == level and a.status == ApprovalStatus.PENDING.value)
            for level in ("Critical", "Urgent", "High", "Medium", "Low")
        }
        by_status = {
            "pending": pending,
            "approved": approved,
            "rejected": rejected,
            "expired": sum(1 for a in approvals if a.status == ApprovalStatus.EXPIRED.value),
        }

        since = utcnow() - timedelta(days=30)
        recent = [a for a in approvals if a.requested_at and a.requested_at >= since]

        return {
            "total_approvals": total,
            "pending_approvals": pending,
            "approved_count": approved,
            "rejected_count": rejected,
            "avg_resolution_time_hours": round(avg_resolution, 1),
            "completion_rate": round(completion_rate, 1),
            "by_priority": by_priority,
            "by_status": by_status,
            "recent": {
                "total": len(recent),
                "completed": sum(1 for a in recent if a.completed_at),
                "pending": sum(1 for a in recent if a.status == ApprovalStatus.PENDING.value),
            },
        }

    # =====================================================
    # Review / comments / reassignment
    # =====================================================

    def review(
        self,
        approval_id: int,
        actor: User,
        decision: str,
        decision_reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ApprovalRequest:
        approval = self.get_approval(approval_id, actor)
        action = REVIEW_DECISIONS.get(decision)
        if action is None:
            raise ValidationError("Decision must be approved, rejected or reopen", field="decision")
        if approval.step_execution_id is None:
            raise ValidationError(f"Approval request {approval.id} is not linked to a workflow step")

        self.decisions.decide(approval.step_execution_id, actor, action, decision_reason)

        if notes and notes.strip():
            instance = self.db.get(WorkflowInstance, approval.workflow_instance_id)
            self.decisions.add_comment(approval, instance, actor, notes.strip(), False)

        self.db.refresh(approval)
        return approval

    def list_comments(self, approval_id: int, actor: User) -> List[ApprovalComment]:
        approval = self.get_approval(approval_id, actor)
        query = self.db.query(ApprovalComment).filter(ApprovalComment.approval_request_id == approval.id)
        if not self.directory.has_permission(actor, Permission.APPROVAL_COMMENT_INTERNAL):
            query = query.filter(ApprovalComment.is_internal == False)
        return query.order_by(ApprovalComment.created_at, ApprovalComment.id).all()

    def add_comment(self, approval_id: int, actor: User, comment: str, is_internal: bool = False) -> ApprovalComment:
        approval = self.get_approval(approval_id, actor)
        if not comment or not comment.strip():
            raise ValidationError("Comment text is required", field="comment")
        instance = self.db.get(WorkflowInstance, approval.workflow_instance_id)
        return self.decisions.add_comment(approval, instance, actor, comment.strip(), is_internal)

    def reassign(
        self,
        approval_id: int,
        actor: User,
        reason: str,
        new_user_id: Optional[int] = None,
        new_role_id: Optional[int] = None,
    ) -> ApprovalRequest:
        approval = self.get_approval(approval_id, actor)
        self.reassignments.reassign(approval.step_execution_id, actor, reason, new_user_id, new_role_id)
        self.db.refresh(approval)
        return approval

    # =====================================================
    # Reminders
    # =====================================================

    def send_reminders(self, first_hours: int, urgent_hours: int, now: Optional[datetime] = None) -> Dict[str, int]:
        """Emit at most one reminder and one urgent reminder per open request"""
        now = now or utcnow()
        first_cutoff = now - timedelta(hours=first_hours)
        urgent_cutoff = now - timedelta(hours=urgent_hours)

        candidates = (
            self.db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.status.in_(OPEN_APPROVAL_STATUSES),
                ApprovalRequest.orphaned == False,
                ApprovalRequest.reminder_level < 2,
                ApprovalRequest.assigned_at <= first_cutoff,
            )
            .order_by(ApprovalRequest.assigned_at)
            .all()
        )

        sent = {"reminders": 0, "urgent_reminders": 0}
        for approval in candidates:
            if approval.assigned_at <= urgent_cutoff:
                event_type, level, counter = EventType.APPROVAL_URGENT_REMINDER, 2, "urgent_reminders"
            elif (approval.reminder_level or 0) < 1:
                event_type, level, counter = EventType.APPROVAL_REMINDER, 1, "reminders"
            else:
                continue

            instance = self.db.get(WorkflowInstance, approval.workflow_instance_id)
            recipients = [approval.assigned_to] if approval.assigned_to else (
                self.directory.resolve(approval.assigned_role_id) if approval.assigned_role_id else []
            )
            approval.reminder_level = level
            self.emitter.record(
                event_type, instance, None, None,
                detail={
                    "approval_request_id": approval.id,
                    "title": approval.title,
                    "hours_pending": round((now - approval.assigned_at).total_seconds() / 3600, 1),
                },
                recipients=recipients,
            )
            sent[counter] += 1

        self.db.flush()
        if sent["reminders"] or sent["urgent_reminders"]:
            logger.info(f"Approval reminders sent: {sent}")
        return sent

    @staticmethod
    def _assigned_to_filter(actor: User):
        conditions = [ApprovalRequest.assigned_to == actor.id]
        if actor.role_id is not None:
            conditions.append(and_(
                ApprovalRequest.assigned_to.is_(None),
                ApprovalRequest.assigned_role_id == actor.role_id,
            ))
        return or_(*conditions)
