"""
Lender term endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, get_lending_system, get_current_user_id
from .schemas import CreateTermRequest, UpdateTermRequest, PaymentPreferencesRequest, serialize_term


router = APIRouter()


@router.get("")
def list_terms(
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    terms = system.term_manager.list_terms_for_lender(user_id)
    return {"terms": [serialize_term(t) for t in terms]}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_term(
    request: CreateTermRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Publish a lender term"""
    term = system.term_manager.create_term(
        lender_id=user_id,
        max_loan_amount=request.max_loan_amount,
        max_payback_days=request.max_payback_days,
        fee_per_10_short=request.fee_per_10_short,
        fee_per_10_long=request.fee_per_10_long,
        loan_multiple=request.loan_multiple,
        allow_multiple_loans=request.allow_multiple_loans,
        preferred_payment_methods=request.preferred_payment_methods,
        require_matching_payment_method=request.require_matching_payment_method,
        name=request.name
    )
    return {"term": serialize_term(term), "message": "Lender term created successfully"}


@router.put("/{term_id}")
def update_term(
    term_id: str,
    request: UpdateTermRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    term = system.term_manager.update_term(term_id, user_id, **request.model_dump())
    return {"term": serialize_term(term), "message": "Lender term updated successfully"}


@router.put("/{term_id}/payment-preferences")
def update_payment_preferences(
    term_id: str,
    request: PaymentPreferencesRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Replace the rails a term prefers borrowers to pay through"""
    term = system.term_manager.update_payment_preferences(
        term_id,
        user_id,
        preferred_payment_methods=request.preferred_payment_methods,
        require_matching_payment_method=request.require_matching_payment_method
    )
    return {"term": serialize_term(term), "message": "Payment preferences updated successfully"}
