"""
Payment account endpoints, scoped to the calling user
"""

from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, get_lending_system, get_current_user_id
from .schemas import CreatePaymentAccountRequest, UpdatePaymentAccountRequest, serialize_account
from ..accounts import AccountType
from ..errors import ValidationError


router = APIRouter()


@router.get("")
def list_payment_accounts(
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Caller's accounts, defaults first"""
    accounts = system.account_manager.list_accounts(user_id)
    return {"accounts": [serialize_account(a) for a in accounts]}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_payment_account(
    request: CreatePaymentAccountRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Register a CashApp, PayPal or Zelle account"""
    try:
        account_type = AccountType(request.account_type.upper())
    except ValueError:
        raise ValidationError(f"Invalid account type: {request.account_type}")

    account = system.account_manager.create_account(
        user_id=user_id,
        account_type=account_type,
        identifier=request.identifier,
        nickname=request.nickname,
        is_default=request.is_default
    )
    return {"account": serialize_account(account), "message": "Payment account added successfully"}


@router.patch("/{account_id}")
def update_payment_account(
    account_id: str,
    request: UpdatePaymentAccountRequest,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Change nickname or default flag"""
    account = system.account_manager.update_account(
        account_id=account_id,
        user_id=user_id,
        nickname=request.nickname,
        is_default=request.is_default
    )
    return {"account": serialize_account(account), "message": "Payment account updated successfully"}


@router.delete("/{account_id}")
def delete_payment_account(
    account_id: str,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    system.account_manager.delete_account(account_id, user_id)
    return {"message": "Payment account deleted successfully"}
