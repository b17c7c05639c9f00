# =====================================================
# FILE: app/core/permissions.py
# Role-Based Access Control Permission Definitions
# =====================================================

from enum import Enum
from typing import List, Dict, Set


class Permission(str, Enum):
    # Workflow Permissions
    WORKFLOW_CREATE = "workflow.create"
    WORKFLOW_MANAGE = "workflow.manage"
    WORKFLOW_VIEW = "workflow.view"
    WORKFLOW_APPROVE = "workflow.approve"
    WORKFLOW_OVERRIDE = "workflow.override"

    # Approval Requests
    APPROVAL_CREATE = "approval.create"
    APPROVAL_COMMENT_INTERNAL = "approval.comment_internal"


SUPER_ADMIN = "super_admin"

# Role to Permissions Mapping
ROLE_PERMISSIONS: Dict[str, Set[Permission]] = {
    "Company Admin": {p for p in Permission},  # All permissions

    "Operations Manager": {
        Permission.WORKFLOW_CREATE, Permission.WORKFLOW_MANAGE,
        Permission.WORKFLOW_VIEW, Permission.WORKFLOW_APPROVE,
        Permission.APPROVAL_CREATE, Permission.APPROVAL_COMMENT_INTERNAL,
    },

    "Approver": {
        Permission.WORKFLOW_VIEW, Permission.WORKFLOW_APPROVE,
        Permission.APPROVAL_CREATE, Permission.APPROVAL_COMMENT_INTERNAL,
    },

    "Purchaser": {
        Permission.WORKFLOW_VIEW,
        Permission.APPROVAL_CREATE,
        Permission.APPROVAL_COMMENT_INTERNAL,
    },

    "Viewer": {
        Permission.WORKFLOW_VIEW,
    },
}


def has_permission(user_roles: List[str], permission: Permission) -> bool:
    """Check if user has a specific permission based on their roles"""
    for role in user_roles:
        if permission in ROLE_PERMISSIONS.get(role, set()):
            return True
    return False
