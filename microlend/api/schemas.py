"""
Pydantic schemas for API requests, and serializers for API responses

Request bodies use the camelCase field names the web client sends.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from ..loans import Loan
from ..payments import Payment
from ..accounts import PaymentAccount
from ..terms import LenderTerm
from ..relationships import Relationship
from ..notifications import Notification
from ..settlement import SettlementResult


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Payment schemas
class InitiatePaymentRequest(ApiModel):
    loan_id: str = Field(..., alias="loanId")
    amount: Decimal = Field(..., description="Positive amount")
    method: str = Field(..., description="CASHAPP, ZELLE, PAYPAL, STRIPE or INTERNAL_WALLET")
    payer_role: str = Field(..., alias="payerRole")
    receiver_role: str = Field(..., alias="receiverRole")


class ConfirmStripeRequest(ApiModel):
    payment_intent_id: str = Field(..., alias="paymentIntentId")
    payment_id: str = Field(..., alias="paymentId")


class ConfirmPayPalRequest(ApiModel):
    paypal_payment_id: str = Field(..., alias="paymentId")
    payer_id: str = Field(..., alias="payerId")
    payment_id: str = Field(..., alias="dbPaymentId")


class ConfirmCashAppRequest(ApiModel):
    payment_id: str = Field(..., alias="paymentId")
    cashapp_transaction_id: Optional[str] = Field(None, alias="cashAppTransactionId")
    confirmation_note: Optional[str] = Field(None, alias="confirmationNote")


class SubmitManualProofRequest(ApiModel):
    payment_id: str = Field(..., alias="paymentId")
    user_role: str = Field(..., alias="userRole")
    transaction_id: Optional[str] = Field(None, alias="transactionId")
    note: Optional[str] = None
    screenshot_path: Optional[str] = Field(None, alias="screenshotPath")


class ConfirmManualPaymentRequest(ApiModel):
    payment_id: str = Field(..., alias="paymentId")
    confirmed: bool
    user_role: str = Field(..., alias="userRole")
    note: Optional[str] = None


class ValidatePaymentMethodsRequest(ApiModel):
    lender_term_id: str = Field(..., alias="lenderTermId")
    borrower_id: str = Field(..., alias="borrowerId")


# Payment account schemas
class CreatePaymentAccountRequest(ApiModel):
    account_type: str = Field(..., alias="accountType")
    identifier: str
    nickname: Optional[str] = None
    is_default: bool = Field(False, alias="isDefault")


class UpdatePaymentAccountRequest(ApiModel):
    nickname: Optional[str] = None
    is_default: Optional[bool] = Field(None, alias="isDefault")


# Loan schemas
class CreateLoanRequest(ApiModel):
    lender_id: str = Field(..., alias="lenderId")
    amount: Decimal
    payback_days: int = Field(..., alias="paybackDays")
    lender_term_id: Optional[str] = Field(None, alias="lenderTermId")
    agreed_payment_account_id: Optional[str] = Field(None, alias="agreedPaymentAccountId")
    agreed_payment_method: Optional[str] = Field(None, alias="agreedPaymentMethod")
    signed_by: Optional[str] = Field(None, alias="signedBy")


# Lender term schemas
class CreateTermRequest(ApiModel):
    max_loan_amount: Decimal = Field(..., alias="maxLoanAmount")
    max_payback_days: int = Field(..., alias="maxPaybackDays")
    fee_per_10_short: Decimal = Field(..., alias="feePer10Short")
    fee_per_10_long: Decimal = Field(..., alias="feePer10Long")
    loan_multiple: Optional[Decimal] = Field(None, alias="loanMultiple")
    allow_multiple_loans: bool = Field(False, alias="allowMultipleLoans")
    preferred_payment_methods: List[str] = Field(default_factory=list, alias="preferredPaymentMethods")
    require_matching_payment_method: bool = Field(False, alias="requireMatchingPaymentMethod")
    name: Optional[str] = None


class UpdateTermRequest(ApiModel):
    max_loan_amount: Optional[Decimal] = Field(None, alias="maxLoanAmount")
    max_payback_days: Optional[int] = Field(None, alias="maxPaybackDays")
    fee_per_10_short: Optional[Decimal] = Field(None, alias="feePer10Short")
    fee_per_10_long: Optional[Decimal] = Field(None, alias="feePer10Long")
    loan_multiple: Optional[Decimal] = Field(None, alias="loanMultiple")
    allow_multiple_loans: Optional[bool] = Field(None, alias="allowMultipleLoans")
    name: Optional[str] = None


class PaymentPreferencesRequest(ApiModel):
    preferred_payment_methods: List[str] = Field(default_factory=list, alias="preferredPaymentMethods")
    require_matching_payment_method: bool = Field(False, alias="requireMatchingPaymentMethod")


class UpdateRelationshipRequest(ApiModel):
    status: str


# Response serializers
def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "loanId": payment.loan_id,
        "amount": str(payment.amount),
        "method": payment.method.value,
        "payerRole": payment.payer_role.value,
        "receiverRole": payment.receiver_role.value,
        "paymentDate": payment.payment_date.isoformat(),
        "confirmed": payment.confirmed,
        "transferStatus": payment.transfer_status.value,
        "manualConfirmationStatus": payment.manual_confirmation_status.value,
        "lenderConfirmed": payment.lender_confirmed,
        "borrowerConfirmed": payment.borrower_confirmed,
        "externalTransactionId": payment.external_transaction_id,
        "confirmationNote": payment.confirmation_note,
        "confirmationScreenshot": payment.confirmation_screenshot,
        "providerReference": payment.provider_reference,
        "fromAccountId": payment.from_account_id,
        "toAccountId": payment.to_account_id,
        "failureReason": payment.failure_reason,
    }


def serialize_loan(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "lenderId": loan.lender_id,
        "borrowerId": loan.borrower_id,
        "amount": str(loan.amount),
        "feeAmount": str(loan.fee_amount),
        "totalPayable": str(loan.total_payable),
        "dateBorrowed": loan.date_borrowed.isoformat(),
        "paybackDate": loan.payback_date.isoformat(),
        "status": loan.status.value,
        "health": loan.health.value,
        "lenderTermId": loan.lender_term_id,
        "agreedPaymentAccountId": loan.agreed_payment_account_id,
        "agreedPaymentMethod": loan.agreed_payment_method,
        "signedBy": loan.signed_by,
        "createdAt": loan.created_at.isoformat(),
    }


def serialize_account(account: Optional[PaymentAccount]) -> Optional[Dict[str, Any]]:
    if account is None:
        return None
    return {
        "id": account.id,
        "accountType": account.account_type.value,
        "identifier": account.identifier,
        "nickname": account.nickname,
        "isVerified": account.is_verified,
        "isDefault": account.is_default,
        "createdAt": account.created_at.isoformat(),
    }


def serialize_term(term: LenderTerm) -> Dict[str, Any]:
    return {
        "id": term.id,
        "lenderId": term.lender_id,
        "name": term.name,
        "maxLoanAmount": str(term.max_loan_amount),
        "maxPaybackDays": term.max_payback_days,
        "feePer10Short": str(term.fee_per_10_short),
        "feePer10Long": str(term.fee_per_10_long),
        "loanMultiple": str(term.loan_multiple),
        "allowMultipleLoans": term.allow_multiple_loans,
        "inviteToken": term.invite_token,
        "preferredPaymentMethods": term.preferred_payment_methods,
        "requireMatchingPaymentMethod": term.require_matching_payment_method,
    }


def serialize_relationship(relationship: Relationship) -> Dict[str, Any]:
    return {
        "id": relationship.id,
        "lenderId": relationship.lender_id,
        "borrowerId": relationship.borrower_id,
        "status": relationship.status.value,
        "lenderTermId": relationship.lender_term_id,
    }


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "loanId": notification.loan_id,
        "type": notification.notification_type.value,
        "message": notification.message,
        "isRead": notification.is_read,
        "createdAt": notification.created_at.isoformat(),
    }


def serialize_settlement(result: SettlementResult) -> Dict[str, Any]:
    body = result.to_dict()
    body["payment"] = serialize_payment(result.payment)
    return body
