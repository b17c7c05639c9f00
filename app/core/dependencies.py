# =====================================================
# FILE: app/core/dependencies.py
# FastAPI dependencies: current user and workflow engine
# =====================================================

from functools import lru_cache
from typing import Optional
import logging

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.core.database import SessionLocal, get_db
from app.models.user import User
from app.services.notification_sink import NotificationSink, build_default_sink
from app.services.workflow_engine import WorkflowEngine

logger = logging.getLogger(__name__)


async def get_current_user(
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db)
) -> User:
    """
    Resolve the authenticated user.
    Authentication itself happens upstream; the gateway forwards the
    user id in the X-User-Id header.
    """
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )

    user = db.query(User).filter(User.id == x_user_id).first()
    if not user or not user.is_active:
        logger.warning(f"Rejected request for unknown or inactive user {x_user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive"
        )

    return user


@lru_cache()
def get_notification_sink() -> NotificationSink:
    return build_default_sink(SessionLocal)


def get_workflow_engine(
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink)
) -> WorkflowEngine:
    return WorkflowEngine(db, sink)
