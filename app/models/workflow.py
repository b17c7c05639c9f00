# =====================================================
# FILE: app/models/workflow.py
# Workflow templates, instances, step executions
# =====================================================

from enum import Enum

from sqlalchemy import (
    Column, String, Boolean, DateTime, Integer, ForeignKey, Text, JSON, Index
)
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.utils.datetime_helpers import utcnow


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class WorkflowOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class StepStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    TIMEOUT = "timeout"


class StepType(str, Enum):
    APPROVAL = "approval"
    REVIEW = "review"
    NOTIFICATION = "notification"
    CONDITION = "condition"


class AssigneeType(str, Enum):
    USER = "user"
    ROLE = "role"


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ParallelPolicy(str, Enum):
    ANY = "any"
    MAJORITY = "majority"


class TimeoutAction(str, Enum):
    REJECT = "reject"
    ADVANCE = "advance"


ACTIVE_INSTANCE_STATUSES = (WorkflowStatus.PENDING.value, WorkflowStatus.IN_PROGRESS.value)
ACTIVE_STEP_STATUSES = (StepStatus.ASSIGNED.value, StepStatus.IN_PROGRESS.value)
OPEN_STEP_STATUSES = (StepStatus.PENDING.value,) + ACTIVE_STEP_STATUSES


class WorkflowTemplate(Base):
    __tablename__ = "workflow_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    trigger_type = Column(String(100), nullable=False, default="manual")
    entity_type = Column(String(100), nullable=False)
    trigger_conditions = Column(JSON)
    priority = Column(String(20), default="Medium")
    parallel_policy = Column(String(20), default=ParallelPolicy.ANY.value)
    timeout_action = Column(String(20), default=TimeoutAction.REJECT.value)
    is_active = Column(Boolean, default=True)
    created_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    steps = relationship(
        "WorkflowStepDefinition",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="WorkflowStepDefinition.step_number",
    )

    __table_args__ = (
        Index("ix_workflow_templates_trigger", "company_id", "trigger_type", "is_active"),
    )


class WorkflowStepDefinition(Base):
    __tablename__ = "workflow_step_definitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(Integer, ForeignKey("workflow_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    step_number = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    step_type = Column(String(50), nullable=False, default=StepType.APPROVAL.value)
    assignee_type = Column(String(20), nullable=False, default=AssigneeType.USER.value)
    assignee_id = Column(Integer)
    is_required = Column(Boolean, default=True)
    timeout_hours = Column(Integer)
    auto_approve = Column(Boolean, default=False)
    allow_parallel = Column(Boolean, default=False)
    conditions = Column(JSON)
    escalation_assignee_type = Column(String(20))
    escalation_assignee_id = Column(Integer)
    created_at = Column(DateTime, default=utcnow)

    template = relationship("WorkflowTemplate", back_populates="steps")

    def to_snapshot(self) -> dict:
        """Frozen copy stored on each instance"""
        return {
            "step_number": self.step_number,
            "name": self.name,
            "description": self.description,
            "step_type": self.step_type,
            "assignee_type": self.assignee_type,
            "assignee_id": self.assignee_id,
            "is_required": bool(self.is_required),
            "timeout_hours": self.timeout_hours,
            "auto_approve": bool(self.auto_approve),
            "allow_parallel": bool(self.allow_parallel),
            "conditions": self.conditions,
            "escalation_assignee_type": self.escalation_assignee_type,
            "escalation_assignee_id": self.escalation_assignee_id,
        }


class WorkflowInstance(Base):
    __tablename__ = "workflow_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("workflow_templates.id", ondelete="SET NULL"), index=True)
    status = Column(String(20), nullable=False, default=WorkflowStatus.PENDING.value)
    outcome = Column(String(20))
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(100), nullable=False)
    # "<company>:<entity_type>:<entity_id>" while pending/in_progress, NULL otherwise
    active_key = Column(String(255), unique=True)
    current_step_number = Column(Integer)
    title = Column(String(255))
    description = Column(Text)
    priority = Column(String(20), default="Medium")
    request_type = Column(String(50), default="approve")
    trigger_operation = Column(String(20))
    snapshot = Column(JSON)
    template_snapshot = Column(JSON, nullable=False)
    parallel_policy = Column(String(20), default=ParallelPolicy.ANY.value)
    timeout_action = Column(String(20), default=TimeoutAction.REJECT.value)
    triggered_by = Column(Integer, ForeignKey("users.id"))
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancelled_by = Column(Integer, ForeignKey("users.id"))
    cancel_reason = Column(Text)
    failed_at = Column(DateTime)
    failure_reason = Column(Text)

    template = relationship("WorkflowTemplate")
    executions = relationship(
        "WorkflowStepExecution",
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="WorkflowStepExecution.id",
    )

    __table_args__ = (
        Index("ix_workflow_instances_entity", "entity_type", "entity_id"),
    )

    @staticmethod
    def build_active_key(company_id: int, entity_type: str, entity_id: str) -> str:
        return f"{company_id}:{entity_type}:{entity_id}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_INSTANCE_STATUSES

    def step_definition(self, step_number: int):
        for step in self.template_snapshot or []:
            if step["step_number"] == step_number:
                return step
        return None

    def next_step_number(self, after: int):
        later = [s["step_number"] for s in self.template_snapshot or [] if s["step_number"] > after]
        return min(later) if later else None

    def first_step_number(self):
        numbers = [s["step_number"] for s in self.template_snapshot or []]
        return min(numbers) if numbers else None


class WorkflowStepExecution(Base):
    __tablename__ = "workflow_step_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    step_number = Column(Integer, nullable=False)
    step_name = Column(String(200))
    step_type = Column(String(50))
    is_required = Column(Boolean, default=True)
    status = Column(String(20), nullable=False, default=StepStatus.PENDING.value)
    assignee_type = Column(String(20))
    assigned_to = Column(Integer, ForeignKey("users.id"), index=True)
    assigned_role_id = Column(Integer, ForeignKey("roles.id"), index=True)
    assignee_name = Column(String(255))
    decision = Column(String(20))
    decided_by = Column(Integer, ForeignKey("users.id"))
    notes = Column(Text)
    escalation_level = Column(Integer, default=0)
    escalated_from_id = Column(Integer, ForeignKey("workflow_step_executions.id"))
    started_at = Column(DateTime, default=utcnow)
    acknowledged_at = Column(DateTime)
    completed_at = Column(DateTime)
    timeout_at = Column(DateTime, index=True)
    superseded_at = Column(DateTime)

    instance = relationship("WorkflowInstance", back_populates="executions")
    reassignments = relationship(
        "StepReassignment",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="StepReassignment.id",
    )
    approval_request = relationship(
        "ApprovalRequest",
        back_populates="step_execution",
        uselist=False,
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STEP_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status not in OPEN_STEP_STATUSES


class StepReassignment(Base):
    """Append-only record of an assignee change on one step execution"""
    __tablename__ = "workflow_step_reassignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    step_execution_id = Column(
        Integer, ForeignKey("workflow_step_executions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_user_id = Column(Integer, ForeignKey("users.id"))
    from_role_id = Column(Integer, ForeignKey("roles.id"))
    to_user_id = Column(Integer, ForeignKey("users.id"))
    to_role_id = Column(Integer, ForeignKey("roles.id"))
    reason = Column(Text, nullable=False)
    reassigned_by = Column(Integer, ForeignKey("users.id"))
    is_escalation = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    execution = relationship("WorkflowStepExecution", back_populates="reassignments")
