"""
Approval Pydantic Schemas
File: app/api/api_v1/approvals/schemas.py
Description: Schemas for step decisions, reassignment and approval requests
"""

from pydantic import BaseModel, Field, validator
from typing import List, Optional, Dict, Any
from datetime import datetime


# =====================================================
# STEP EXECUTION ACTIONS
# =====================================================

class DecisionRequest(BaseModel):
    decision: str = Field(..., description="approve, reject, reopen or comment")
    reason: Optional[str] = Field(None, max_length=5000, description="Required for reject and reopen; the text of a comment")
    is_internal: bool = False

    @validator('decision')
    def normalize_decision(cls, v):
        return v.strip().lower()

    class Config:
        json_schema_extra = {
            "example": {
                "decision": "reject",
                "reason": "insufficient justification"
            }
        }


class ReassignRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    new_user_id: Optional[int] = None
    new_role_id: Optional[int] = None


class ReassignmentResponse(BaseModel):
    id: int
    step_execution_id: int
    from_user_id: Optional[int] = None
    from_role_id: Optional[int] = None
    to_user_id: Optional[int] = None
    to_role_id: Optional[int] = None
    reason: str
    reassigned_by: Optional[int] = None
    is_escalation: bool = False
    created_at: datetime

    class Config:
        from_attributes = True


# =====================================================
# APPROVAL REQUESTS
# =====================================================

class ApprovalRequestCreate(BaseModel):
    entity_type: str
    entity_id: str = Field(..., min_length=1, max_length=100)
    request_type: str = Field("approve", max_length=50)
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    priority: str = "Medium"
    assigned_to: Optional[int] = None
    assigned_role_id: Optional[int] = None
    expires_at: Optional[datetime] = None

    @validator('entity_id', pre=True)
    def coerce_entity_id(cls, v):
        return str(v) if v is not None else v

    @validator('priority')
    def validate_priority(cls, v):
        valid = ["Low", "Medium", "High", "Critical", "Urgent"]
        if v not in valid:
            raise ValueError(f"Priority must be one of: {', '.join(valid)}")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "entity_type": "stock_adjustment",
                "entity_id": "42",
                "title": "Write-off of damaged stock",
                "priority": "High",
                "assigned_role_id": 2,
                "data": {"quantity": -15, "reason": "water damage"}
            }
        }


class ApprovalRequestResponse(BaseModel):
    id: int
    company_id: int
    workflow_instance_id: Optional[int] = None
    step_execution_id: Optional[int] = None
    request_type: Optional[str] = None
    entity_type: str
    entity_id: str
    title: str
    description: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    status: str
    priority: Optional[str] = None
    requested_by: Optional[int] = None
    assigned_to: Optional[int] = None
    assigned_role_id: Optional[int] = None
    decision: Optional[str] = None
    decision_reason: Optional[str] = None
    reviewed_by: Optional[int] = None
    requested_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    orphaned: bool = False

    class Config:
        from_attributes = True


class ApprovalRequestListResponse(BaseModel):
    items: List[ApprovalRequestResponse]
    total: int
    limit: int
    offset: int


class ReviewRequest(BaseModel):
    decision: str = Field(..., description="approved, rejected or reopen")
    decision_reason: Optional[str] = Field(None, max_length=5000)
    notes: Optional[str] = Field(None, max_length=5000)

    @validator('decision')
    def validate_decision(cls, v):
        if v not in ("approved", "rejected", "reopen"):
            raise ValueError("Decision must be approved, rejected or reopen")
        return v


class CommentCreate(BaseModel):
    comment: str = Field(..., min_length=1, max_length=5000)
    is_internal: bool = False


class CommentResponse(BaseModel):
    id: int
    approval_request_id: int
    user_id: Optional[int] = None
    comment: str
    is_internal: bool = False
    created_at: datetime

    class Config:
        from_attributes = True


class ReleaseUserRequest(BaseModel):
    user_id: int
    reason: str = Field(..., description="user_deactivated or user_deleted")


class ReleaseUserResponse(BaseModel):
    reassigned: List[int] = []
    orphaned: List[int] = []


class ApprovalMetricsResponse(BaseModel):
    total_approvals: int
    pending_approvals: int
    approved_count: int
    rejected_count: int
    avg_resolution_time_hours: float
    completion_rate: float
    by_priority: Dict[str, int]
    by_status: Dict[str, int]
    recent: Dict[str, int]
