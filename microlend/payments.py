"""
Payment Module

One funds-movement attempt tied to exactly one loan, and the PaymentLedger
that stores them. Every mutation after creation is a conditional update
guarded by the payment's version, so a proof submission and a confirmation
racing on the same payment cannot silently overwrite each other.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import ConflictError, NotFoundError, ValidationError


class PaymentMethod(Enum):
    """Rails a payment can move over"""
    CASHAPP = "CASHAPP"
    ZELLE = "ZELLE"
    PAYPAL = "PAYPAL"
    STRIPE = "STRIPE"
    INTERNAL_WALLET = "INTERNAL_WALLET"


MANUAL_METHODS = (PaymentMethod.CASHAPP, PaymentMethod.ZELLE)


class PartyRole(Enum):
    LENDER = "LENDER"
    BORROWER = "BORROWER"

    @property
    def counterparty(self) -> 'PartyRole':
        return PartyRole.BORROWER if self == PartyRole.LENDER else PartyRole.LENDER


class TransferStatus(Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ManualConfirmationStatus(Enum):
    """Dual-attestation progress for manual rails"""
    NONE = "NONE"
    PENDING_UPLOAD = "PENDING_UPLOAD"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    DISPUTED = "DISPUTED"


_ENUM_FIELDS = {
    'method': PaymentMethod,
    'payer_role': PartyRole,
    'receiver_role': PartyRole,
    'transfer_status': TransferStatus,
    'manual_confirmation_status': ManualConfirmationStatus,
}


@dataclass
class Payment(StorageRecord):
    """A single funding or repayment attempt"""
    loan_id: str
    amount: Decimal
    method: PaymentMethod
    payer_role: PartyRole
    receiver_role: PartyRole
    payment_date: datetime
    confirmed: bool = False
    transfer_status: TransferStatus = TransferStatus.PENDING
    manual_confirmation_status: ManualConfirmationStatus = ManualConfirmationStatus.NONE
    lender_confirmed: bool = False
    borrower_confirmed: bool = False
    external_transaction_id: Optional[str] = None
    confirmation_note: Optional[str] = None
    confirmation_screenshot: Optional[str] = None
    provider_reference: Optional[str] = None
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    failure_reason: Optional[str] = None
    version: int = 0

    @property
    def is_funding(self) -> bool:
        return self.payer_role == PartyRole.LENDER and self.receiver_role == PartyRole.BORROWER

    @property
    def is_repayment(self) -> bool:
        return self.payer_role == PartyRole.BORROWER and self.receiver_role == PartyRole.LENDER

    @property
    def is_manual(self) -> bool:
        return self.method in MANUAL_METHODS

    @property
    def is_settled(self) -> bool:
        """Terminal success: confirmed and the transfer completed"""
        return self.confirmed and self.transfer_status == TransferStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        for key in _ENUM_FIELDS:
            result[key] = getattr(self, key).value
        result['payment_date'] = self.payment_date.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'payment_date'):
            data[key] = datetime.fromisoformat(data[key])
        data['amount'] = Decimal(data['amount'])
        for key, enum_type in _ENUM_FIELDS.items():
            data[key] = enum_type(data[key])
        return cls(**data)


class PaymentLedger:
    """Stores payments and answers the aggregate queries settlement relies on"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.payments_table = "payments"

    def create_payment(
        self,
        loan_id: str,
        amount: Any,
        method: PaymentMethod,
        payer_role: PartyRole,
        receiver_role: PartyRole,
        manual_confirmation_status: ManualConfirmationStatus = ManualConfirmationStatus.NONE,
        from_account_id: Optional[str] = None,
        to_account_id: Optional[str] = None
    ) -> Payment:
        amount = parse_amount(amount)
        if payer_role == receiver_role:
            raise ValidationError("Payer and receiver must be opposite sides of the loan")

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            amount=amount,
            method=method,
            payer_role=payer_role,
            receiver_role=receiver_role,
            payment_date=now,
            manual_confirmation_status=manual_confirmation_status,
            from_account_id=from_account_id,
            to_account_id=to_account_id
        )
        self.storage.save(self.payments_table, payment.id, payment.to_dict())
        return payment

    def update(self, payment: Payment, **changes) -> Payment:
        """
        Apply changes if the stored payment is still at payment.version

        Enum values in changes are stored by value. Raises ConflictError when
        another writer got there first.
        """
        update = {k: (v.value if isinstance(v, Enum) else v) for k, v in changes.items()}
        update['version'] = payment.version + 1
        update['updated_at'] = datetime.now(timezone.utc).isoformat()

        stored = self.storage.update_if(
            self.payments_table, payment.id, {"version": payment.version}, update
        )
        if stored is None:
            if not self.storage.exists(self.payments_table, payment.id):
                raise NotFoundError("Payment not found")
            raise ConflictError(f"Payment {payment.id} was modified concurrently")
        return Payment.from_dict(stored)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        if data:
            return Payment.from_dict(data)
        return None

    def require_payment(self, payment_id: str) -> Payment:
        payment = self.get_payment(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        return payment

    def list_for_loan(self, loan_id: str) -> List[Payment]:
        """Payments on a loan, newest first"""
        payments = [Payment.from_dict(d) for d in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments

    def confirmed_repayments(self, loan_id: str) -> List[Payment]:
        return [p for p in self.list_for_loan(loan_id) if p.confirmed and p.is_repayment]

    def total_repaid(self, loan_id: str) -> Decimal:
        """Fresh sum of confirmed borrower-to-lender payments"""
        return sum((p.amount for p in self.confirmed_repayments(loan_id)), Decimal("0"))

    def has_confirmed_funding(self, loan_id: str) -> bool:
        return any(p.confirmed and p.is_funding for p in self.list_for_loan(loan_id))

    def disputed_payments(self, loan_id: str) -> List[Payment]:
        return [
            p for p in self.list_for_loan(loan_id)
            if p.manual_confirmation_status == ManualConfirmationStatus.DISPUTED
        ]


def format_amount(amount: Decimal) -> str:
    """Dollar string used in user-facing messages, e.g. $25.00"""
    return f"${Decimal(amount):.2f}"


def parse_amount(value: Any) -> Decimal:
    """Positive Decimal amount, or ValidationError"""
    if value is None or value == "":
        raise ValidationError("Amount is required")
    try:
        amount = Decimal(str(value))
    except Exception:
        raise ValidationError("Amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be positive")
    return amount
