# =====================================================
# FILE: app/api/api_v1/workflow/router.py
# Workflow templates, entity events, instances and maintenance routes
# =====================================================

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
import logging

from app.core.dependencies import get_current_user, get_workflow_engine
from app.core.exceptions import UnauthorizedError
from app.core.permissions import Permission
from app.models.user import User
from app.services.entity_events import EntityEvent
from app.services.workflow_engine import WorkflowEngine
from app.api.api_v1.workflow.schemas import (
    CancelInstanceRequest,
    EntityEventRequest,
    EntityEventResponse,
    HistoryEntry,
    ReminderResult,
    RunTemplateRequest,
    SweepResult,
    WorkflowInstanceListResponse,
    WorkflowInstanceResponse,
    WorkflowTemplateCreate,
    WorkflowTemplateResponse,
    WorkflowTemplateUpdate,
)

logger = logging.getLogger(__name__)

templates_router = APIRouter(prefix="/api/v1/workflow-templates", tags=["workflow-templates"])
events_router = APIRouter(prefix="/api/v1/workflow-events", tags=["workflow-events"])
instances_router = APIRouter(prefix="/api/v1/workflow-instances", tags=["workflow-instances"])
maintenance_router = APIRouter(prefix="/api/v1/workflow-maintenance", tags=["workflow-maintenance"])


# =====================================================
# TEMPLATES
# =====================================================

@templates_router.post("", response_model=WorkflowTemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow_template(
    payload: WorkflowTemplateCreate,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """Create a workflow template with its steps"""
    return engine.create_template(current_user, payload.model_dump())


@templates_router.get("", response_model=List[WorkflowTemplateResponse])
async def list_workflow_templates(
    is_active: Optional[bool] = Query(None),
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.list_templates(current_user, is_active)


@templates_router.get("/{template_id}", response_model=WorkflowTemplateResponse)
async def get_workflow_template(
    template_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.get_template(template_id, current_user)


@templates_router.put("/{template_id}", response_model=WorkflowTemplateResponse)
async def update_workflow_template(
    template_id: int,
    payload: WorkflowTemplateUpdate,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """
    Update a template. Running instances are unaffected: they keep
    the step list captured when they started.
    """
    data = payload.model_dump(exclude_unset=True)
    return engine.update_template(template_id, current_user, data)


@templates_router.post("/{template_id}/deactivate", response_model=WorkflowTemplateResponse)
async def deactivate_workflow_template(
    template_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.deactivate_template(template_id, current_user)


@templates_router.delete("/{template_id}")
async def delete_workflow_template(
    template_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    engine.delete_template(template_id, current_user)
    return {"success": True, "message": f"Workflow template {template_id} deleted"}


@templates_router.post("/{template_id}/run", response_model=WorkflowInstanceResponse, status_code=status.HTTP_201_CREATED)
async def run_workflow_template(
    template_id: int,
    payload: RunTemplateRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """Manually start a template against one entity"""
    return engine.run_template(template_id, current_user, payload.entity_id, payload.snapshot)


# =====================================================
# ENTITY EVENTS
# =====================================================

@events_router.post("", response_model=EntityEventResponse)
async def submit_entity_event(
    payload: EntityEventRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """
    Entity services call this on every create/update. Matching
    templates are instantiated; a template that fails is recorded in
    the audit trail without affecting the others.
    """
    event = EntityEvent(
        entity_type=payload.entity_type,
        entity_id=payload.entity_id,
        operation=payload.operation,
        company_id=current_user.company_id,
        snapshot=payload.snapshot,
        actor_user_id=current_user.id,
    )
    instances = engine.evaluate_event(event)
    return {"success": True, "created": len(instances), "instances": instances}


# =====================================================
# INSTANCES
# =====================================================

@instances_router.get("", response_model=WorkflowInstanceListResponse)
async def list_workflow_instances(
    status_filter: Optional[str] = Query(None, alias="status"),
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    items, total = engine.list_instances(current_user, status_filter, entity_type, entity_id, limit, offset)
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@instances_router.get("/{instance_id}", response_model=WorkflowInstanceResponse)
async def get_workflow_instance(
    instance_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.get_instance(instance_id, current_user)


@instances_router.get("/{instance_id}/history", response_model=List[HistoryEntry])
async def get_workflow_history(
    instance_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """Timeline of every transition recorded for the instance"""
    return engine.get_history(instance_id, current_user)


@instances_router.post("/{instance_id}/cancel", response_model=WorkflowInstanceResponse)
async def cancel_workflow_instance(
    instance_id: int,
    payload: Optional[CancelInstanceRequest] = None,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    reason = payload.reason if payload else None
    return engine.cancel_instance(instance_id, current_user, reason)


# =====================================================
# MAINTENANCE (normally driven by the scheduler)
# =====================================================

def _require_manage(engine: WorkflowEngine, user: User) -> None:
    if not engine.directory.has_permission(user, Permission.WORKFLOW_MANAGE):
        raise UnauthorizedError("Workflow maintenance requires the workflow.manage permission")


@maintenance_router.post("/sweep-timeouts", response_model=SweepResult)
async def run_timeout_sweep(
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    _require_manage(engine, current_user)
    logger.info(f"Timeout sweep triggered manually by user {current_user.id}")
    return engine.sweep_timeouts()


@maintenance_router.post("/send-reminders", response_model=ReminderResult)
async def run_approval_reminders(
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    _require_manage(engine, current_user)
    logger.info(f"Approval reminders triggered manually by user {current_user.id}")
    return engine.send_reminders()
