# =====================================================
# FILE: app/services/role_directory.py
# Identity / role lookups used by the workflow engine
# =====================================================

import logging
from typing import List, Optional, Protocol

from sqlalchemy.orm import Session

from app.core.permissions import Permission, SUPER_ADMIN, has_permission
from app.models.user import Role, User

logger = logging.getLogger(__name__)


class RoleDirectory(Protocol):
    def resolve(self, role_id: int) -> List[int]:
        ...

    def get_user(self, user_id: int) -> Optional[User]:
        ...

    def get_role(self, role_id: int) -> Optional[Role]:
        ...

    def is_eligible(self, user_id: int, role_id: int) -> bool:
        ...

    def has_permission(self, user: User, permission: Permission) -> bool:
        ...


class SqlRoleDirectory:
    """RoleDirectory backed by the users / roles tables"""

    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: int) -> Optional[User]:
        if user_id is None:
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def get_role(self, role_id: int) -> Optional[Role]:
        if role_id is None:
            return None
        return self.db.query(Role).filter(Role.id == role_id).first()

    def resolve(self, role_id: int) -> List[int]:
        """Active holders of a role, oldest account first"""
        rows = (
            self.db.query(User.id)
            .filter(User.role_id == role_id, User.is_active == True)
            .order_by(User.id)
            .all()
        )
        return [row[0] for row in rows]

    def is_eligible(self, user_id: int, role_id: int) -> bool:
        user = self.get_user(user_id)
        return bool(user and user.is_active and user.role_id == role_id)

    def has_permission(self, user: User, permission: Permission) -> bool:
        if user is None:
            return False
        if user.user_type == SUPER_ADMIN:
            return True
        role_names = [user.role.role_name] if user.role and user.role.is_active else []
        return has_permission(role_names, permission)

    def display_name(self, user_id: Optional[int] = None, role_id: Optional[int] = None) -> Optional[str]:
        if user_id is not None:
            user = self.get_user(user_id)
            return user.full_name if user else None
        if role_id is not None:
            role = self.get_role(role_id)
            return role.role_name if role else None
        return None
