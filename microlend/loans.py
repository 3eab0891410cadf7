"""
Loan Module

The loan aggregate, its closed status and health enumerations, the legal
transition table, and the LoanManager that handles loan requests, denial and
version-guarded status writes.

Status and health are independent axes:

    PENDING -> FUNDED | DENIED
    FUNDED  -> OVERDUE | COMPLETED
    OVERDUE -> COMPLETED

    GOOD -> BEHIND -> FAILING -> DEFAULTED   (never improves)

A loan never stores how much has been repaid; that figure is always derived
from its payment history (see lifecycle.py).
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .users import UserManager
from .relationships import RelationshipManager
from .terms import (
    LenderTermManager, calculate_fee,
    DEFAULT_FEE_PER_10_SHORT, DEFAULT_FEE_PER_10_LONG
)
from .errors import (
    AuthorizationError, ConflictError, IllegalTransitionError,
    NotFoundError, ValidationError
)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"
    FUNDED = "FUNDED"
    OVERDUE = "OVERDUE"
    COMPLETED = "COMPLETED"
    DENIED = "DENIED"


class LoanHealth(Enum):
    """Delinquency grade, independent of status"""
    GOOD = "GOOD"
    BEHIND = "BEHIND"
    FAILING = "FAILING"
    DEFAULTED = "DEFAULTED"


LOAN_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.FUNDED, LoanStatus.DENIED},
    LoanStatus.FUNDED: {LoanStatus.OVERDUE, LoanStatus.COMPLETED},
    LoanStatus.OVERDUE: {LoanStatus.COMPLETED},
    LoanStatus.COMPLETED: set(),
    LoanStatus.DENIED: set(),
}

HEALTH_ORDER = [LoanHealth.GOOD, LoanHealth.BEHIND, LoanHealth.FAILING, LoanHealth.DEFAULTED]

ACTIVE_STATUSES = (LoanStatus.PENDING, LoanStatus.FUNDED, LoanStatus.OVERDUE)
FUNDED_STATUSES = (LoanStatus.FUNDED, LoanStatus.OVERDUE, LoanStatus.COMPLETED)


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    return current == target or target in LOAN_TRANSITIONS[current]


def validate_transition(current: LoanStatus, target: LoanStatus) -> None:
    """Raise IllegalTransitionError unless target is reachable from current (or equal)"""
    if not can_transition(current, target):
        raise IllegalTransitionError(current.value, target.value)


def worse_health(current: LoanHealth, proposed: LoanHealth) -> LoanHealth:
    """Return whichever grade is worse; health never improves"""
    if HEALTH_ORDER.index(proposed) > HEALTH_ORDER.index(current):
        return proposed
    return current


def health_for_days_late(days_late: int) -> LoanHealth:
    if days_late > 30:
        return LoanHealth.DEFAULTED
    if days_late > 14:
        return LoanHealth.FAILING
    return LoanHealth.BEHIND


@dataclass
class Loan(StorageRecord):
    """Loan between a lender and a borrower"""
    lender_id: str
    borrower_id: str
    amount: Decimal
    fee_amount: Decimal
    total_payable: Decimal       # amount + fee_amount, fixed at creation
    date_borrowed: datetime
    payback_date: datetime
    status: LoanStatus = LoanStatus.PENDING
    health: LoanHealth = LoanHealth.GOOD
    lender_term_id: Optional[str] = None
    agreed_payment_account_id: Optional[str] = None
    agreed_payment_method: Optional[str] = None
    signed_by: Optional[str] = None
    version: int = 0
    last_reminder_health: Optional[str] = None

    def days_late(self, now: datetime) -> int:
        """Whole days past the payback date (0 if not yet due)"""
        if now <= self.payback_date:
            return 0
        return (now - self.payback_date).days

    def party_for_role(self, role_value: str) -> str:
        """User id for "LENDER" or "BORROWER" """
        return self.lender_id if role_value == "LENDER" else self.borrower_id


class LoanManager:
    """
    Manages loan requests, denial, lookups and guarded status writes
    """

    MAX_WRITE_ATTEMPTS = 5

    def __init__(
        self,
        storage: StorageInterface,
        user_manager: UserManager,
        relationship_manager: RelationshipManager,
        term_manager: LenderTermManager,
        audit_trail: AuditTrail,
        default_fee_per_10_short: Decimal = DEFAULT_FEE_PER_10_SHORT,
        default_fee_per_10_long: Decimal = DEFAULT_FEE_PER_10_LONG
    ):
        self.storage = storage
        self.user_manager = user_manager
        self.relationship_manager = relationship_manager
        self.term_manager = term_manager
        self.audit_trail = audit_trail
        self.default_fee_per_10_short = default_fee_per_10_short
        self.default_fee_per_10_long = default_fee_per_10_long

        self.loans_table = "loans"

    def request_loan(
        self,
        borrower_id: str,
        lender_id: str,
        amount: Any,
        payback_days: Any,
        lender_term_id: Optional[str] = None,
        agreed_payment_account_id: Optional[str] = None,
        agreed_payment_method: Optional[str] = None,
        signed_by: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Create a PENDING loan request priced from the lender's term

        Args:
            borrower_id: Requesting borrower
            lender_id: Lender being asked
            amount: Principal
            payback_days: Days until repayment is due
            lender_term_id: Term to price from (must belong to lender_id)
            agreed_payment_account_id: Account the parties agreed to settle through
            agreed_payment_method: Rail the parties agreed to settle through
            signed_by: Name the borrower signed with

        Returns:
            Created Loan
        """
        if not lender_id or amount in (None, "") or payback_days in (None, ""):
            raise ValidationError("Missing required fields")

        self.user_manager.require_user(borrower_id)
        self.user_manager.require_user(lender_id)

        if not self.relationship_manager.has_confirmed(lender_id, borrower_id):
            raise ValidationError("No confirmed relationship with this lender")

        term = None
        if lender_term_id:
            term = self.term_manager.get_term(lender_term_id)
            if not term or term.lender_id != lender_id:
                raise ValidationError("Lender term does not belong to this lender")

        quote = calculate_fee(
            amount, payback_days, term=term, now=now,
            default_fee_per_10_short=self.default_fee_per_10_short,
            default_fee_per_10_long=self.default_fee_per_10_long
        )

        if term:
            if quote.amount > term.max_loan_amount:
                raise ValidationError(f"Amount exceeds the lender's maximum of {term.max_loan_amount}")
            if quote.payback_days > term.max_payback_days:
                raise ValidationError(f"Payback period exceeds the lender's maximum of {term.max_payback_days} days")
            if quote.amount % term.loan_multiple != 0:
                raise ValidationError(f"Amount must be a multiple of {term.loan_multiple}")
            if not term.allow_multiple_loans and self._has_active_loan(borrower_id, lender_id, term.id):
                raise ValidationError("You have existing active loans. Cannot request a new loan.")

        created = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=created,
            updated_at=created,
            lender_id=lender_id,
            borrower_id=borrower_id,
            amount=quote.amount,
            fee_amount=quote.fee_amount,
            total_payable=quote.total_payable,
            date_borrowed=quote.date_borrowed,
            payback_date=quote.payback_date,
            lender_term_id=term.id if term else None,
            agreed_payment_account_id=agreed_payment_account_id,
            agreed_payment_method=agreed_payment_method,
            signed_by=signed_by
        )
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=borrower_id,
            metadata={
                "lender_id": lender_id,
                "amount": loan.amount,
                "fee_amount": loan.fee_amount,
                "total_payable": loan.total_payable,
                "payback_date": loan.payback_date
            }
        )
        return loan

    def deny_loan(self, loan_id: str, lender_id: str) -> Loan:
        """Lender declines a PENDING request"""
        loan = self.require_loan(loan_id)
        if loan.lender_id != lender_id:
            raise AuthorizationError("Only the lender can deny this loan")

        loan, _ = self.update_status(loan.id, LoanStatus.DENIED)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DENIED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=lender_id,
            metadata={}
        )
        return loan

    def update_status(
        self,
        loan_id: str,
        target: LoanStatus,
        health: Optional[LoanHealth] = None,
        **changes
    ) -> Tuple[Loan, bool]:
        """
        Move a loan to target through the transition table

        The write is a compare-and-set on the loan's version; a lost race is
        retried against the freshly stored loan. Health can only get worse.

        Args:
            loan_id: Loan to update
            target: Desired status (equal to current is a no-op)
            health: Proposed health grade
            **changes: Extra fields written with the same guarded update

        Returns:
            (loan, status_changed)
        """
        for _ in range(self.MAX_WRITE_ATTEMPTS):
            loan = self.require_loan(loan_id)
            validate_transition(loan.status, target)

            new_health = worse_health(loan.health, health) if health else loan.health
            status_changed = loan.status != target
            if not status_changed and new_health == loan.health and not changes:
                return loan, False

            update = {
                "status": target.value,
                "health": new_health.value,
                "version": loan.version + 1,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            update.update(changes)

            stored = self.storage.update_if(
                self.loans_table, loan.id, {"version": loan.version}, update
            )
            if stored is not None:
                return self._loan_from_dict(stored), status_changed

        raise ConflictError(f"Loan {loan_id} is being updated concurrently, try again")

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return self._loan_from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans_for_borrower(self, borrower_id: str) -> List[Loan]:
        return self._sorted(self.storage.find(self.loans_table, {"borrower_id": borrower_id}))

    def list_loans_for_lender(self, lender_id: str) -> List[Loan]:
        return self._sorted(self.storage.find(self.loans_table, {"lender_id": lender_id}))

    def find_loans_by_status(self, status: LoanStatus) -> List[Loan]:
        return self._sorted(self.storage.find(self.loans_table, {"status": status.value}))

    def _has_active_loan(self, borrower_id: str, lender_id: str, term_id: str) -> bool:
        loans = self.storage.find(self.loans_table, {
            "borrower_id": borrower_id,
            "lender_id": lender_id,
            "lender_term_id": term_id
        })
        active = {s.value for s in ACTIVE_STATUSES}
        return any(data["status"] in active for data in loans)

    def _sorted(self, loans_data: List[Dict]) -> List[Loan]:
        loans = [self._loan_from_dict(data) for data in loans_data]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        result = loan.to_dict()
        result['status'] = loan.status.value
        result['health'] = loan.health.value
        result['date_borrowed'] = loan.date_borrowed.isoformat()
        result['payback_date'] = loan.payback_date.isoformat()
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        data = dict(data)
        for key in ('created_at', 'updated_at', 'date_borrowed', 'payback_date'):
            data[key] = datetime.fromisoformat(data[key])
        for key in ('amount', 'fee_amount', 'total_payable'):
            data[key] = Decimal(data[key])
        data['status'] = LoanStatus(data['status'])
        data['health'] = LoanHealth(data['health'])
        return Loan(**data)
