"""
Relationship Module

Pairing between one lender and one borrower. A loan can only be requested
while the pair holds a CONFIRMED relationship; either party may block it.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError


class RelationshipStatus(Enum):
    CONFIRMED = "CONFIRMED"
    BLOCKED = "BLOCKED"


@dataclass
class Relationship(StorageRecord):
    """Lender and borrower pairing"""
    lender_id: str
    borrower_id: str
    status: RelationshipStatus = RelationshipStatus.CONFIRMED
    lender_term_id: Optional[str] = None

    def involves(self, user_id: str) -> bool:
        return user_id in (self.lender_id, self.borrower_id)


class RelationshipManager:
    """Creates relationships and tracks their status"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.relationships_table = "relationships"

    def create_relationship(
        self,
        lender_id: str,
        borrower_id: str,
        lender_term_id: Optional[str] = None
    ) -> Relationship:
        """Return the existing pairing or create a CONFIRMED one"""
        if lender_id == borrower_id:
            raise ValidationError("A user cannot borrow from themselves")

        existing = self.find_between(lender_id, borrower_id)
        if existing:
            return existing

        now = datetime.now(timezone.utc)
        relationship = Relationship(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            lender_id=lender_id,
            borrower_id=borrower_id,
            lender_term_id=lender_term_id
        )
        self._save_relationship(relationship)

        self.audit_trail.log_event(
            event_type=AuditEventType.RELATIONSHIP_CREATED,
            entity_type="relationship",
            entity_id=relationship.id,
            metadata={"lender_id": lender_id, "borrower_id": borrower_id}
        )
        return relationship

    def set_status(self, relationship_id: str, user_id: str, status: RelationshipStatus) -> Relationship:
        """Confirm or block a relationship the caller is party to"""
        relationship = self.get_relationship(relationship_id)
        if not relationship or not relationship.involves(user_id):
            raise NotFoundError("Relationship not found")

        previous = relationship.status
        relationship.status = status
        relationship.updated_at = datetime.now(timezone.utc)
        self._save_relationship(relationship)

        self.audit_trail.log_event(
            event_type=AuditEventType.RELATIONSHIP_UPDATED,
            entity_type="relationship",
            entity_id=relationship.id,
            user_id=user_id,
            metadata={"from": previous.value, "to": status.value}
        )
        return relationship

    def get_relationship(self, relationship_id: str) -> Optional[Relationship]:
        data = self.storage.load(self.relationships_table, relationship_id)
        if data:
            return self._relationship_from_dict(data)
        return None

    def find_between(self, lender_id: str, borrower_id: str) -> Optional[Relationship]:
        found = self.storage.find(self.relationships_table, {
            "lender_id": lender_id,
            "borrower_id": borrower_id
        })
        if found:
            return self._relationship_from_dict(found[0])
        return None

    def has_confirmed(self, lender_id: str, borrower_id: str) -> bool:
        relationship = self.find_between(lender_id, borrower_id)
        return relationship is not None and relationship.status == RelationshipStatus.CONFIRMED

    def list_for_user(self, user_id: str) -> List[Relationship]:
        as_lender = self.storage.find(self.relationships_table, {"lender_id": user_id})
        as_borrower = self.storage.find(self.relationships_table, {"borrower_id": user_id})
        return [self._relationship_from_dict(d) for d in as_lender + as_borrower]

    def _save_relationship(self, relationship: Relationship) -> None:
        result = relationship.to_dict()
        result['status'] = relationship.status.value
        self.storage.save(self.relationships_table, relationship.id, result)

    def _relationship_from_dict(self, data: Dict) -> Relationship:
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['status'] = RelationshipStatus(data['status'])
        return Relationship(**data)
