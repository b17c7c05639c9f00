"""
Step Execution API Router
File: app/api/api_v1/approvals/step_executions.py

Reviewer actions on a single workflow step execution.
"""

from fastapi import APIRouter, Depends
from typing import List
import logging

from app.core.dependencies import get_current_user, get_workflow_engine
from app.models.approval import ApprovalComment
from app.models.user import User
from app.services.workflow_engine import WorkflowEngine
from app.api.api_v1.workflow.schemas import StepExecutionResponse
from app.api.api_v1.approvals.schemas import (
    CommentResponse,
    DecisionRequest,
    ReassignmentResponse,
    ReassignRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/step-executions", tags=["step-executions"])


@router.get("/{execution_id}", response_model=StepExecutionResponse)
async def get_step_execution(
    execution_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.get_execution(execution_id, current_user)


@router.post("/{execution_id}/start", response_model=StepExecutionResponse)
async def start_step_execution(
    execution_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """Acknowledge the step; a role member starting a queued step claims it"""
    return engine.start_step(execution_id, current_user)


@router.post("/{execution_id}/decide")
async def decide_step_execution(
    execution_id: int,
    payload: DecisionRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """
    Approve, reject, reopen or comment on a step execution.
    A decision and its effect on the workflow are committed together;
    losing a race against another reviewer returns 409.
    """
    result = engine.decide(
        execution_id,
        current_user,
        payload.decision,
        payload.reason,
        payload.is_internal,
    )

    if isinstance(result, ApprovalComment):
        return {
            "success": True,
            "comment": CommentResponse.model_validate(result).model_dump(mode="json"),
        }

    instance = engine.get_instance(result.instance_id, current_user)
    return {
        "success": True,
        "execution": StepExecutionResponse.model_validate(result).model_dump(mode="json"),
        "instance_status": instance.status,
        "instance_outcome": instance.outcome,
        "current_step_number": instance.current_step_number,
    }


@router.post("/{execution_id}/reassign", response_model=StepExecutionResponse)
async def reassign_step_execution(
    execution_id: int,
    payload: ReassignRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.reassign(
        execution_id,
        current_user,
        payload.reason,
        new_user_id=payload.new_user_id,
        new_role_id=payload.new_role_id,
    )


@router.get("/{execution_id}/reassignments", response_model=List[ReassignmentResponse])
async def list_step_reassignments(
    execution_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.list_reassignments(execution_id, current_user)
