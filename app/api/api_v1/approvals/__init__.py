"""
Approvals Module Init
File: app/api/api_v1/approvals/__init__.py
"""

from fastapi import APIRouter
from . import approval_requests, step_executions

router = APIRouter()

# Include step execution and approval request routers
router.include_router(step_executions.router)
router.include_router(approval_requests.router)
