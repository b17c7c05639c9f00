# =====================================================
# FILE: app/models/audit_log.py
# Audit Log Model - workflow history timeline and API audit trail
# =====================================================

from sqlalchemy import Column, String, Integer, ForeignKey, Text, DateTime, JSON
from app.core.database import Base
from app.utils.datetime_helpers import utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), index=True)
    table_name = Column(String(100), nullable=False)
    record_id = Column(String(100), nullable=False)
    workflow_instance_id = Column(Integer, ForeignKey("workflow_instances.id", ondelete="CASCADE"), index=True)
    step_execution_id = Column(Integer, ForeignKey("workflow_step_executions.id", ondelete="SET NULL"))
    action = Column(String(50), nullable=False)  # workflow_started, step_approved, api_post, ...
    user_id = Column(Integer, ForeignKey("users.id"))
    changes = Column(JSON)
    ip_address = Column(String(45))
    user_agent = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)
