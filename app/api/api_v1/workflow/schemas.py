"""
Workflow Pydantic Schemas
File: app/api/api_v1/workflow/schemas.py
Description: Request/response schemas for workflow templates, entity events and instances
"""

from pydantic import BaseModel, Field, validator
from typing import List, Optional, Dict, Any
from datetime import datetime


# =====================================================
# TEMPLATE STEP SCHEMAS
# =====================================================

class WorkflowStepCreate(BaseModel):
    """One step of a workflow template"""
    step_number: int = Field(..., ge=1, description="Position in the workflow (1-based, contiguous)")
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    step_type: str = Field("approval", description="approval, review, notification or condition")
    assignee_type: str = Field("user", description="user or role")
    assignee_id: Optional[int] = None
    is_required: bool = True
    timeout_hours: Optional[int] = Field(None, ge=1, le=8760)
    auto_approve: bool = False
    allow_parallel: bool = False
    conditions: Optional[Dict[str, Any]] = None
    escalation_assignee_type: Optional[str] = None
    escalation_assignee_id: Optional[int] = None

    @validator('name')
    def validate_name(cls, v):
        if not v or v.strip() == "":
            raise ValueError("Step name cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "step_number": 1,
                "name": "Finance approval",
                "step_type": "approval",
                "assignee_type": "role",
                "assignee_id": 3,
                "is_required": True,
                "timeout_hours": 24,
                "escalation_assignee_type": "user",
                "escalation_assignee_id": 7
            }
        }


class WorkflowStepResponse(BaseModel):
    id: int
    step_number: int
    name: str
    description: Optional[str] = None
    step_type: str
    assignee_type: str
    assignee_id: Optional[int] = None
    is_required: bool = True
    timeout_hours: Optional[int] = None
    auto_approve: bool = False
    allow_parallel: bool = False
    conditions: Optional[Dict[str, Any]] = None
    escalation_assignee_type: Optional[str] = None
    escalation_assignee_id: Optional[int] = None

    class Config:
        from_attributes = True


# =====================================================
# TEMPLATE SCHEMAS
# =====================================================

class WorkflowTemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    trigger_type: str = Field("manual", description="manual, <entity>_create, <entity>_update or <entity>_threshold")
    entity_type: Optional[str] = Field(None, description="Required for manual templates")
    trigger_conditions: Optional[Dict[str, Any]] = None
    priority: str = "Medium"
    parallel_policy: str = Field("any", description="Resolution of optional parallel steps: any or majority")
    timeout_action: str = Field("reject", description="Effect of a required step timing out: reject or advance")
    is_active: bool = True
    steps: List[WorkflowStepCreate] = Field(default=[])

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Large purchase orders",
                "trigger_type": "purchase_order_threshold",
                "trigger_conditions": {
                    "threshold": {"field": "amount", "operator": "gt", "value": 5000, "currency": "USD"}
                },
                "priority": "High",
                "steps": [
                    {"step_number": 1, "name": "Manager approval", "assignee_type": "role", "assignee_id": 2}
                ]
            }
        }


class WorkflowTemplateUpdate(BaseModel):
    """Omitted fields keep their value; a steps list replaces all steps"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    trigger_type: Optional[str] = None
    entity_type: Optional[str] = None
    trigger_conditions: Optional[Dict[str, Any]] = None
    priority: Optional[str] = None
    parallel_policy: Optional[str] = None
    timeout_action: Optional[str] = None
    is_active: Optional[bool] = None
    steps: Optional[List[WorkflowStepCreate]] = None


class WorkflowTemplateResponse(BaseModel):
    id: int
    company_id: int
    name: str
    description: Optional[str] = None
    trigger_type: str
    entity_type: str
    trigger_conditions: Optional[Dict[str, Any]] = None
    priority: Optional[str] = None
    parallel_policy: Optional[str] = None
    timeout_action: Optional[str] = None
    is_active: bool
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    steps: List[WorkflowStepResponse] = []

    class Config:
        from_attributes = True


class RunTemplateRequest(BaseModel):
    entity_id: str = Field(..., min_length=1, max_length=100)
    snapshot: Dict[str, Any] = Field(default={})


# =====================================================
# ENTITY EVENT SCHEMAS
# =====================================================

class EntityEventRequest(BaseModel):
    """Create/update notification posted by an entity service"""
    entity_type: str
    entity_id: str = Field(..., min_length=1, max_length=100)
    operation: str = Field(..., description="create or update")
    snapshot: Dict[str, Any] = Field(default={})

    @validator('entity_id', pre=True)
    def coerce_entity_id(cls, v):
        return str(v) if v is not None else v

    class Config:
        json_schema_extra = {
            "example": {
                "entity_type": "purchase_order",
                "entity_id": "PO-1042",
                "operation": "create",
                "snapshot": {"amount": 8500, "currency": "USD", "supplier_id": 12}
            }
        }


# =====================================================
# INSTANCE SCHEMAS
# =====================================================

class StepExecutionResponse(BaseModel):
    id: int
    instance_id: int
    step_number: int
    step_name: Optional[str] = None
    step_type: Optional[str] = None
    is_required: bool = True
    status: str
    assignee_type: Optional[str] = None
    assigned_to: Optional[int] = None
    assigned_role_id: Optional[int] = None
    assignee_name: Optional[str] = None
    decision: Optional[str] = None
    decided_by: Optional[int] = None
    notes: Optional[str] = None
    escalation_level: int = 0
    escalated_from_id: Optional[int] = None
    started_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WorkflowInstanceSummary(BaseModel):
    id: int
    company_id: int
    template_id: Optional[int] = None
    status: str
    outcome: Optional[str] = None
    entity_type: str
    entity_id: str
    current_step_number: Optional[int] = None
    title: Optional[str] = None
    priority: Optional[str] = None
    trigger_operation: Optional[str] = None
    triggered_by: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    class Config:
        from_attributes = True


class WorkflowInstanceResponse(WorkflowInstanceSummary):
    description: Optional[str] = None
    request_type: Optional[str] = None
    snapshot: Optional[Dict[str, Any]] = None
    template_snapshot: List[Dict[str, Any]] = []
    parallel_policy: Optional[str] = None
    timeout_action: Optional[str] = None
    cancelled_by: Optional[int] = None
    cancel_reason: Optional[str] = None
    executions: List[StepExecutionResponse] = []


class WorkflowInstanceListResponse(BaseModel):
    items: List[WorkflowInstanceSummary]
    total: int
    limit: int
    offset: int


class EntityEventResponse(BaseModel):
    success: bool = True
    created: int
    instances: List[WorkflowInstanceSummary] = []


class CancelInstanceRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class HistoryEntry(BaseModel):
    id: int
    action: str
    user_id: Optional[int] = None
    step_execution_id: Optional[int] = None
    changes: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


# =====================================================
# MAINTENANCE SCHEMAS
# =====================================================

class SweepResult(BaseModel):
    timed_out: int = 0
    escalated: int = 0
    skipped: int = 0
    errors: int = 0


class ReminderResult(BaseModel):
    reminders: int = 0
    urgent_reminders: int = 0
