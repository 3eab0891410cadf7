"""
User Module

Parties to a loan. Registration and authentication live outside this
package; the manager only stores the identity and role the lending flows need.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import NotFoundError, ValidationError


class UserRole(Enum):
    """Which side of a loan a user may take"""
    LENDER = "LENDER"
    BORROWER = "BORROWER"
    BOTH = "BOTH"


@dataclass
class User(StorageRecord):
    """A lender, a borrower, or both"""
    name: str
    email: str
    role: UserRole
    is_active: bool = True

    @property
    def can_lend(self) -> bool:
        return self.role in (UserRole.LENDER, UserRole.BOTH)

    @property
    def can_borrow(self) -> bool:
        return self.role in (UserRole.BORROWER, UserRole.BOTH)


class UserManager:
    """Stores users and their roles"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.users_table = "users"

    def create_user(self, name: str, email: str, role: UserRole) -> User:
        if not name or not email or "@" not in email:
            raise ValidationError("A name and a valid email are required")

        email = email.strip().lower()
        if self.storage.find(self.users_table, {"email": email}):
            raise ValidationError(f"A user with email {email} already exists")

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            email=email,
            role=role
        )
        self._save_user(user)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.users_table, user_id)
        if data:
            return self._user_from_dict(data)
        return None

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def list_users(self) -> List[User]:
        return [self._user_from_dict(data) for data in self.storage.load_all(self.users_table)]

    def ensure_can_lend(self, user_id: str) -> User:
        """Upgrade a borrower-only user to BOTH once they start lending"""
        user = self.require_user(user_id)
        if user.role == UserRole.BORROWER:
            user.role = UserRole.BOTH
            user.updated_at = datetime.now(timezone.utc)
            self._save_user(user)
        return user

    def _save_user(self, user: User) -> None:
        self.storage.save(self.users_table, user.id, self._user_to_dict(user))

    def _user_to_dict(self, user: User) -> Dict:
        result = user.to_dict()
        result['role'] = user.role.value
        return result

    def _user_from_dict(self, data: Dict) -> User:
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['role'] = UserRole(data['role'])
        return User(**data)
