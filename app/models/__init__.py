# =====================================================
# FILE: app/models/__init__.py
# =====================================================

from app.core.database import Base

# Identity directory
from app.models.user import User, Company, Role

# Workflow engine
from app.models.workflow import (
    WorkflowTemplate,
    WorkflowStepDefinition,
    WorkflowInstance,
    WorkflowStepExecution,
    StepReassignment,
)
from app.models.approval import ApprovalRequest, ApprovalComment

# Audit and Notification models
from app.models.audit_log import AuditLog
from app.models.notification import Notification

__all__ = [
    "Base",

    "User",
    "Company",
    "Role",

    "WorkflowTemplate",
    "WorkflowStepDefinition",
    "WorkflowInstance",
    "WorkflowStepExecution",
    "StepReassignment",
    "ApprovalRequest",
    "ApprovalComment",

    "AuditLog",
    "Notification",
]
