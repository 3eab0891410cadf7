"""
Borrower and lender loan endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, get_lending_system, get_current_user_id
from .schemas import CreateLoanRequest, serialize_loan


borrower_router = APIRouter()
lender_router = APIRouter()


@borrower_router.post("/loans", status_code=status.HTTP_201_CREATED)
def request_loan(
    request: CreateLoanRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Request a loan from a lender the caller has a confirmed relationship with"""
    loan = system.loan_manager.request_loan(
        borrower_id=user_id,
        lender_id=request.lender_id,
        amount=request.amount,
        payback_days=request.payback_days,
        lender_term_id=request.lender_term_id,
        agreed_payment_account_id=request.agreed_payment_account_id,
        agreed_payment_method=request.agreed_payment_method,
        signed_by=request.signed_by
    )
    return {"loan": serialize_loan(loan), "message": "Loan request submitted successfully"}


@borrower_router.get("/loans")
def list_borrower_loans(
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    loans = system.loan_manager.list_loans_for_borrower(user_id)
    return {"loans": [serialize_loan(loan) for loan in loans]}


@lender_router.get("/loans")
def list_lender_loans(
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    loans = system.loan_manager.list_loans_for_lender(user_id)
    return {"loans": [serialize_loan(loan) for loan in loans]}


@lender_router.post("/loans/{loan_id}/deny")
def deny_loan(
    loan_id: str,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Decline a pending loan request"""
    loan = system.loan_manager.deny_loan(loan_id, lender_id=user_id)
    return {"loan": serialize_loan(loan), "message": "Loan denied"}
