"""
Payment initiation and two-phase confirmation endpoints
"""

from fastapi import APIRouter, Depends

from .auth import LendingSystem, get_lending_system, get_current_user_id
from .schemas import (
    InitiatePaymentRequest, ConfirmStripeRequest, ConfirmPayPalRequest,
    ConfirmCashAppRequest, serialize_payment, serialize_settlement
)


router = APIRouter()


@router.post("")
def initiate_payment(
    request: InitiatePaymentRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Create a payment on a loan and start it on its rail"""
    result = system.settlement_engine.initiate_payment(
        loan_id=request.loan_id,
        amount=request.amount,
        method=request.method,
        payer_role=request.payer_role,
        receiver_role=request.receiver_role,
        user_id=user_id
    )
    return serialize_settlement(result)


@router.post("/confirm-stripe")
def confirm_stripe_payment(
    request: ConfirmStripeRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Confirm a card payment once the client finished the payment intent"""
    result = system.settlement_engine.confirm_stripe_payment(
        payment_intent_id=request.payment_intent_id,
        payment_id=request.payment_id,
        user_id=user_id
    )
    return serialize_settlement(result)


@router.post("/confirm-paypal")
def confirm_paypal_payment(
    request: ConfirmPayPalRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Execute an approved PayPal payment"""
    result = system.settlement_engine.confirm_paypal_payment(
        paypal_payment_id=request.paypal_payment_id,
        payer_id=request.payer_id,
        payment_id=request.payment_id,
        user_id=user_id
    )
    return serialize_settlement(result)


@router.post("/confirm-cashapp")
def confirm_cashapp_transfer(
    request: ConfirmCashAppRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Record the CashApp leg of a completed card payment"""
    result = system.settlement_engine.confirm_cashapp_transfer(
        payment_id=request.payment_id,
        cashapp_transaction_id=request.cashapp_transaction_id,
        note=request.confirmation_note,
        user_id=user_id
    )
    return serialize_settlement(result)


@router.get("/loan/{loan_id}")
def list_loan_payments(
    loan_id: str,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Payments on a loan, newest first"""
    payments = system.settlement_engine.list_loan_payments(loan_id, user_id=user_id)
    return {"payments": [serialize_payment(p) for p in payments]}
