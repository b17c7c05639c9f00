# =====================================================
# FILE: app/models/notification.py
# In-app notifications produced by workflow events
# =====================================================

from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, Text
from app.core.database import Base
from app.utils.datetime_helpers import utcnow


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"))
    notification_type = Column(String(100))
    title = Column(String(255))
    message = Column(Text)
    entity_type = Column(String(100))
    entity_id = Column(String(100))
    is_read = Column(Boolean, default=False)
    read_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
