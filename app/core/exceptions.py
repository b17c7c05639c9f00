"""
Workflow Exception Hierarchy
File: app/core/exceptions.py

Typed errors raised by the workflow engine and mapped to HTTP
responses by register_exception_handlers().
"""

from typing import Any, Dict, List, Optional
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base exception for every workflow engine error."""

    status_code = 500
    error_code = "WORKFLOW_ERROR"

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(WorkflowError):
    """Malformed template definition or decision payload."""

    status_code = 400
    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[List[Dict[str, Any]]] = None,
        field: Optional[str] = None,
    ):
        if field and not details:
            details = [{"field": field, "issue": message}]
        super().__init__(message, details)


class NotFoundError(WorkflowError):
    """Referenced record does not exist or is outside the caller's company."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: Any = None):
        message = f"{resource_type} not found"
        if resource_id is not None:
            message = f"{resource_type} {resource_id} not found"
        super().__init__(message)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(WorkflowError):
    """A concurrent mutation won the compare-and-swap race."""

    status_code = 409
    error_code = "CONFLICT"


class AlreadyDecidedError(ConflictError):
    """The step execution was decided by someone else."""

    error_code = "ALREADY_DECIDED"

    def __init__(self, execution_id: int):
        super().__init__(f"Step execution {execution_id} was already decided by someone else")
        self.execution_id = execution_id


class UnauthorizedError(WorkflowError):
    """Actor lacks permission or is not the resolved assignee."""

    status_code = 403
    error_code = "UNAUTHORIZED"


class EngineFailure(WorkflowError):
    """Unrecoverable condition while advancing an instance."""

    status_code = 500
    error_code = "ENGINE_FAILURE"


def _error_body(exc: WorkflowError) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {
            "code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    }


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc))


def register_exception_handlers(app: FastAPI) -> None:
    """Register the workflow exception handler on a FastAPI application."""
    app.add_exception_handler(WorkflowError, workflow_error_handler)
    logger.info("Registered workflow exception handlers")
