"""
Manual payment attestation endpoints
"""

from fastapi import APIRouter, Depends

from .auth import LendingSystem, get_lending_system, get_current_user_id
from .schemas import (
    SubmitManualProofRequest, ConfirmManualPaymentRequest, ValidatePaymentMethodsRequest,
    serialize_account, serialize_loan, serialize_payment, serialize_settlement
)
from ..errors import AuthorizationError


router = APIRouter()


@router.post("/submit-manual-proof")
def submit_manual_proof(
    request: SubmitManualProofRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Attach transfer proof to a CashApp or Zelle payment"""
    result = system.settlement_engine.submit_manual_proof(
        payment_id=request.payment_id,
        submitter_role=request.user_role,
        transaction_id=request.transaction_id,
        note=request.note,
        screenshot_path=request.screenshot_path,
        user_id=user_id
    )
    return serialize_settlement(result)


@router.post("/confirm-manual-payment")
def confirm_manual_payment(
    request: ConfirmManualPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Confirm or dispute a manual payment"""
    result = system.settlement_engine.confirm_manual_payment(
        payment_id=request.payment_id,
        confirmed=request.confirmed,
        confirmer_role=request.user_role,
        note=request.note,
        user_id=user_id
    )
    return serialize_settlement(result)


@router.post("/validate-payment-methods")
def validate_payment_methods(
    request: ValidatePaymentMethodsRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Check a borrower's accounts against a lender term's preferred rails"""
    term = system.term_manager.require_term(request.lender_term_id)
    if user_id not in (request.borrower_id, term.lender_id):
        raise AuthorizationError("Only the borrower or the term's lender can check payment methods")
    check = system.account_manager.validate_payment_methods(term, request.borrower_id)
    return check.to_dict()


@router.get("/{payment_id}")
def get_payment(
    payment_id: str,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Payment with its loan and both accounts"""
    details = system.settlement_engine.get_payment_details(payment_id, user_id=user_id)
    return {
        "payment": serialize_payment(details["payment"]),
        "loan": serialize_loan(details["loan"]),
        "fromAccount": serialize_account(details["from_account"]),
        "toAccount": serialize_account(details["to_account"]),
    }
