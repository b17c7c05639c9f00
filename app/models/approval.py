# =====================================================
# FILE: app/models/approval.py
# Approval Request and Comment Models
# =====================================================

from enum import Enum

from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.utils.datetime_helpers import utcnow


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


OPEN_APPROVAL_STATUSES = (ApprovalStatus.PENDING.value, ApprovalStatus.IN_REVIEW.value)

PRIORITY_ORDER = {"Urgent": 0, "Critical": 1, "High": 2, "Medium": 3, "Low": 4}


class ApprovalRequest(Base):
    """Reviewer-facing projection of one human step execution"""
    __tablename__ = "approval_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    workflow_instance_id = Column(Integer, ForeignKey("workflow_instances.id", ondelete="CASCADE"), index=True)
    step_execution_id = Column(
        Integer, ForeignKey("workflow_step_executions.id", ondelete="CASCADE"), unique=True
    )
    request_type = Column(String(50), default="approve")
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(100), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    data = Column(JSON)
    status = Column(String(20), nullable=False, default=ApprovalStatus.PENDING.value, index=True)
    priority = Column(String(20), default="Medium")
    requested_by = Column(Integer, ForeignKey("users.id"))
    assigned_to = Column(Integer, ForeignKey("users.id"), index=True)
    assigned_role_id = Column(Integer, ForeignKey("roles.id"))
    decision = Column(String(20))
    decision_reason = Column(Text)
    reviewed_by = Column(Integer, ForeignKey("users.id"))
    requested_at = Column(DateTime, default=utcnow)
    reviewed_at = Column(DateTime)
    completed_at = Column(DateTime)
    expires_at = Column(DateTime)
    orphaned = Column(Boolean, default=False)
    orphaned_at = Column(DateTime)
    reminder_level = Column(Integer, default=0)
    # start of the current reminder cycle; restarts on escalation and reopen
    assigned_at = Column(DateTime, default=utcnow)

    step_execution = relationship("WorkflowStepExecution", back_populates="approval_request")
    comments = relationship(
        "ApprovalComment",
        back_populates="approval_request",
        cascade="all, delete-orphan",
        order_by="ApprovalComment.created_at",
    )


class ApprovalComment(Base):
    __tablename__ = "approval_comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    approval_request_id = Column(
        Integer, ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(Integer, ForeignKey("users.id"))
    comment = Column(Text, nullable=False)
    is_internal = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    approval_request = relationship("ApprovalRequest", back_populates="comments")
    author = relationship("User")
