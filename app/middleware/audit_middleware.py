# =====================================================
# FILE: app/middleware/audit_middleware.py
# Middleware for Automatic API Audit Logging
# =====================================================

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
import time
import logging
from typing import Callable, Optional, Tuple

from app.core.database import SessionLocal
from app.models.audit_log import AuditLog
from app.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to automatically log mutating API requests to the audit trail
    """

    # Endpoints to exclude from logging
    EXCLUDED_ENDPOINTS = [
        "/health",
        "/docs",
        "/redoc",
        "/openapi.json",
        "/api/v1/workflow-maintenance/",  # scheduler-equivalent runs
    ]

    # URL segment -> audited table
    RESOURCE_TABLES = {
        "workflow-templates": "workflow_templates",
        "workflow-instances": "workflow_instances",
        "workflow-events": "workflow_instances",
        "step-executions": "workflow_step_executions",
        "approval-requests": "approval_requests",
    }

    def __init__(self, app: ASGIApp, session_factory: Callable = SessionLocal):
        super().__init__(app)
        self.session_factory = session_factory

    async def dispatch(self, request: Request, call_next: Callable):
        """
        Process request and log to audit trail
        """
        start_time = time.time()

        # Check if endpoint should be logged
        should_log = self._should_log_request(request)

        # Process request
        response = await call_next(request)

        # Log to audit trail if needed
        if should_log and response.status_code < 400:
            try:
                self._log_request(request, response, start_time)
            except Exception as e:
                logger.error(f"Failed to log audit trail: {str(e)}")

        return response

    def _should_log_request(self, request: Request) -> bool:
        """
        Determine if request should be logged
        """
        path = request.url.path
        method = request.method

        # Exclude certain endpoints
        for excluded in self.EXCLUDED_ENDPOINTS:
            if path.startswith(excluded):
                return False

        # Log POST, PUT, PATCH, DELETE by default
        return method in ["POST", "PUT", "PATCH", "DELETE"]

    def _log_request(self, request: Request, response, start_time: float):
        db = self.session_factory()
        try:
            table_name, record_id = self._extract_entity_info(request)
            user_agent = request.headers.get("user-agent", "")

            db.add(AuditLog(
                company_id=None,
                table_name=table_name,
                record_id=record_id or "-",
                action=f"api_{request.method.lower()}",
                user_id=self._get_user_id(request),
                changes={
                    "path": request.url.path,
                    "query_params": dict(request.query_params),
                    "status_code": response.status_code,
                    "response_time_ms": round((time.time() - start_time) * 1000, 2),
                },
                ip_address=self._get_client_ip(request),
                user_agent=user_agent[:500] if user_agent else None,  # Limit length
                created_at=utcnow(),
            ))
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Error in audit logging: {str(e)}")
        finally:
            db.close()

    def _extract_entity_info(self, request: Request) -> Tuple[str, Optional[str]]:
        """
        Extract audited table and record id from request path
        """
        parts = [part for part in request.url.path.split("/") if part]

        table_name = "api"
        record_id = None
        for i, part in enumerate(parts):
            if part in self.RESOURCE_TABLES:
                table_name = self.RESOURCE_TABLES[part]
                if i + 1 < len(parts) and parts[i + 1].isdigit():
                    record_id = parts[i + 1]
                break

        return table_name, record_id

    @staticmethod
    def _get_user_id(request: Request) -> Optional[int]:
        raw = request.headers.get("X-User-Id")
        if raw and raw.isdigit():
            return int(raw)
        return None

    def _get_client_ip(self, request: Request) -> str:
        """
        Get client IP address from request
        """
        # Check for forwarded IP
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()

        # Check for real IP
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        # Fall back to direct connection
        if request.client:
            return request.client.host

        return "unknown"
