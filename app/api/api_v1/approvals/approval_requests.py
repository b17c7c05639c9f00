"""
Approval Requests API Router
File: app/api/api_v1/approvals/approval_requests.py

Reviewer-facing approval requests: ad-hoc creation, queues,
metrics, review, comments and reassignment.
"""

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
import logging

from app.core.dependencies import get_current_user, get_workflow_engine
from app.models.user import User
from app.services.workflow_engine import WorkflowEngine
from app.api.api_v1.approvals.schemas import (
    ApprovalMetricsResponse,
    ApprovalRequestCreate,
    ApprovalRequestListResponse,
    ApprovalRequestResponse,
    CommentCreate,
    CommentResponse,
    ReassignRequest,
    ReleaseUserRequest,
    ReleaseUserResponse,
    ReviewRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/approval-requests", tags=["approval-requests"])


@router.post("", response_model=ApprovalRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_approval_request(
    payload: ApprovalRequestCreate,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """Ask a user or role to approve something outside any template"""
    return engine.create_approval_request(current_user, **payload.model_dump())


@router.get("", response_model=ApprovalRequestListResponse)
async def list_approval_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    priority: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None),
    mine: bool = Query(False, description="Only requests assigned to me or my role"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    items, total = engine.list_approval_requests(
        current_user,
        status=status_filter,
        priority=priority,
        entity_type=entity_type,
        mine=mine,
        limit=limit,
        offset=offset,
    )
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.get("/pending", response_model=List[ApprovalRequestResponse])
async def get_pending_approvals(
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """Open requests waiting on the current user, most urgent first"""
    return engine.get_pending_approvals(current_user)


@router.get("/metrics", response_model=ApprovalMetricsResponse)
async def get_approval_metrics(
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.get_approval_metrics(current_user)


@router.post("/release-user", response_model=ReleaseUserResponse)
async def release_user_assignments(
    payload: ReleaseUserRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    """Hand a departing user's open steps to colleagues in the same role"""
    return engine.release_user_assignments(payload.user_id, payload.reason, current_user)


@router.get("/{approval_id}", response_model=ApprovalRequestResponse)
async def get_approval_request(
    approval_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.get_approval(approval_id, current_user)


@router.post("/{approval_id}/review", response_model=ApprovalRequestResponse)
async def review_approval_request(
    approval_id: int,
    payload: ReviewRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.review_approval(
        approval_id,
        current_user,
        payload.decision,
        decision_reason=payload.decision_reason,
        notes=payload.notes,
    )


@router.get("/{approval_id}/comments", response_model=List[CommentResponse])
async def list_approval_comments(
    approval_id: int,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.list_approval_comments(approval_id, current_user)


@router.post("/{approval_id}/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
async def add_approval_comment(
    approval_id: int,
    payload: CommentCreate,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.add_approval_comment(approval_id, current_user, payload.comment, payload.is_internal)


@router.post("/{approval_id}/reassign", response_model=ApprovalRequestResponse)
async def reassign_approval_request(
    approval_id: int,
    payload: ReassignRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
    current_user: User = Depends(get_current_user)
):
    return engine.reassign_approval(
        approval_id,
        current_user,
        payload.reason,
        new_user_id=payload.new_user_id,
        new_role_id=payload.new_role_id,
    )
