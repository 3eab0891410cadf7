"""
Relationship endpoints
"""

from fastapi import APIRouter, Depends

from .auth import LendingSystem, get_lending_system, get_current_user_id
from .schemas import UpdateRelationshipRequest, serialize_relationship
from ..relationships import RelationshipStatus
from ..errors import ValidationError


router = APIRouter()


@router.get("")
def list_relationships(
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    relationships = system.relationship_manager.list_for_user(user_id)
    return {"relationships": [serialize_relationship(r) for r in relationships]}


@router.patch("/{relationship_id}")
def update_relationship(
    relationship_id: str,
    request: UpdateRelationshipRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Confirm or block a relationship"""
    try:
        new_status = RelationshipStatus(request.status.upper())
    except ValueError:
        raise ValidationError("Status must be CONFIRMED or BLOCKED")

    relationship = system.relationship_manager.set_status(relationship_id, user_id, new_status)
    return {"relationship": serialize_relationship(relationship), "message": "Relationship updated"}
