"""
Lender Terms Module

A lender's reusable loan policy and the fee engine that prices a loan from it.

Fees are quoted per 10 units borrowed: a short payback (7 days or fewer) uses
the term's short rate, anything longer uses the long rate. A loan requested
without a term falls back to the default rates.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import secrets
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .users import UserManager
from .accounts import AccountType
from .errors import AuthorizationError, NotFoundError, ValidationError


SHORT_PAYBACK_MAX_DAYS = 7
DEFAULT_FEE_PER_10_SHORT = Decimal("1.0")
DEFAULT_FEE_PER_10_LONG = Decimal("2.0")
DEFAULT_LOAN_MULTIPLE = Decimal("10")

CENT = Decimal("0.01")


@dataclass
class LenderTerm(StorageRecord):
    """Reusable loan policy published by a lender"""
    lender_id: str
    max_loan_amount: Decimal
    max_payback_days: int
    fee_per_10_short: Decimal
    fee_per_10_long: Decimal
    invite_token: str
    loan_multiple: Decimal = DEFAULT_LOAN_MULTIPLE
    allow_multiple_loans: bool = False
    preferred_payment_methods: List[str] = field(default_factory=list)
    require_matching_payment_method: bool = False
    name: Optional[str] = None


@dataclass
class FeeQuote:
    """Price of a loan at request time"""
    amount: Decimal
    payback_days: int
    fee_per_10: Decimal
    fee_amount: Decimal
    total_payable: Decimal
    date_borrowed: datetime
    payback_date: datetime


def _to_decimal(value: Any, name: str) -> Decimal:
    if value is None or value == "":
        raise ValidationError(f"{name} is required")
    try:
        return Decimal(str(value))
    except Exception:
        raise ValidationError(f"{name} must be a number")


def calculate_fee(
    amount: Any,
    payback_days: Any,
    term: Optional[LenderTerm] = None,
    now: Optional[datetime] = None,
    default_fee_per_10_short: Decimal = DEFAULT_FEE_PER_10_SHORT,
    default_fee_per_10_long: Decimal = DEFAULT_FEE_PER_10_LONG
) -> FeeQuote:
    """
    Compute fee, total payable and payback date for a loan request.

    Args:
        amount: Principal requested
        payback_days: Days until repayment is due
        term: Lender term to price from; defaults apply when omitted
        now: Borrow timestamp (defaults to current UTC time)

    Returns:
        FeeQuote with fee_amount = amount / 10 * fee_per_10
    """
    amount = _to_decimal(amount, "Amount")
    if payback_days is None or payback_days == "":
        raise ValidationError("Payback days is required")
    try:
        payback_days = int(payback_days)
    except (TypeError, ValueError):
        raise ValidationError("Payback days must be a whole number")

    if amount <= 0:
        raise ValidationError("Amount must be positive")
    if payback_days <= 0:
        raise ValidationError("Payback days must be positive")

    if term is not None:
        short_rate, long_rate = term.fee_per_10_short, term.fee_per_10_long
    else:
        short_rate, long_rate = default_fee_per_10_short, default_fee_per_10_long

    fee_per_10 = short_rate if payback_days <= SHORT_PAYBACK_MAX_DAYS else long_rate
    fee_amount = (amount / Decimal("10") * fee_per_10).quantize(CENT, rounding=ROUND_HALF_UP)

    borrowed = now or datetime.now(timezone.utc)
    return FeeQuote(
        amount=amount,
        payback_days=payback_days,
        fee_per_10=fee_per_10,
        fee_amount=fee_amount,
        total_payable=amount + fee_amount,
        date_borrowed=borrowed,
        payback_date=borrowed + timedelta(days=payback_days)
    )


def _normalize_methods(methods: Optional[List[str]]) -> List[str]:
    normalized = []
    for method in methods or []:
        value = str(method).upper()
        try:
            AccountType(value)
        except ValueError:
            raise ValidationError(f"Unsupported payment method {method}")
        if value not in normalized:
            normalized.append(value)
    return normalized


class LenderTermManager:
    """
    Manages lender terms: creation, updates, payment preferences and invite tokens
    """

    def __init__(self, storage: StorageInterface, user_manager: UserManager, audit_trail: AuditTrail):
        self.storage = storage
        self.user_manager = user_manager
        self.audit_trail = audit_trail
        self.terms_table = "lender_terms"

    def create_term(
        self,
        lender_id: str,
        max_loan_amount: Any,
        max_payback_days: Any,
        fee_per_10_short: Any,
        fee_per_10_long: Any,
        loan_multiple: Any = None,
        allow_multiple_loans: bool = False,
        preferred_payment_methods: Optional[List[str]] = None,
        require_matching_payment_method: bool = False,
        name: Optional[str] = None
    ) -> LenderTerm:
        """
        Publish a new lender term

        Args:
            lender_id: Lender publishing the term
            max_loan_amount: Largest principal a borrower may request
            max_payback_days: Longest payback window
            fee_per_10_short: Fee per 10 units for paybacks of 7 days or fewer
            fee_per_10_long: Fee per 10 units for longer paybacks
            loan_multiple: Granularity of loan sizing (defaults to 10)

        Returns:
            Created LenderTerm with a fresh invite token
        """
        values = self._validated_limits(
            max_loan_amount, max_payback_days, fee_per_10_short, fee_per_10_long,
            loan_multiple if loan_multiple not in (None, "") else DEFAULT_LOAN_MULTIPLE
        )

        self.user_manager.ensure_can_lend(lender_id)

        now = datetime.now(timezone.utc)
        term = LenderTerm(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            lender_id=lender_id,
            invite_token=self._new_invite_token(),
            allow_multiple_loans=bool(allow_multiple_loans),
            preferred_payment_methods=_normalize_methods(preferred_payment_methods),
            require_matching_payment_method=bool(require_matching_payment_method),
            name=name,
            **values
        )
        self._save_term(term)

        self.audit_trail.log_event(
            event_type=AuditEventType.TERM_CREATED,
            entity_type="term",
            entity_id=term.id,
            user_id=lender_id,
            metadata={
                "max_loan_amount": term.max_loan_amount,
                "max_payback_days": term.max_payback_days,
                "fee_per_10_short": term.fee_per_10_short,
                "fee_per_10_long": term.fee_per_10_long
            }
        )
        return term

    def update_term(self, term_id: str, lender_id: str, **changes) -> LenderTerm:
        """Update limits or flags on a term the lender owns"""
        term = self._require_owned(term_id, lender_id)

        merged = {
            "max_loan_amount": changes.get("max_loan_amount", term.max_loan_amount),
            "max_payback_days": changes.get("max_payback_days", term.max_payback_days),
            "fee_per_10_short": changes.get("fee_per_10_short", term.fee_per_10_short),
            "fee_per_10_long": changes.get("fee_per_10_long", term.fee_per_10_long),
            "loan_multiple": changes.get("loan_multiple", term.loan_multiple),
        }
        merged = {k: (getattr(term, k) if v is None else v) for k, v in merged.items()}
        values = self._validated_limits(**merged)
        for key, value in values.items():
            setattr(term, key, value)

        if changes.get("allow_multiple_loans") is not None:
            term.allow_multiple_loans = bool(changes["allow_multiple_loans"])
        if changes.get("name") is not None:
            term.name = changes["name"]

        term.updated_at = datetime.now(timezone.utc)
        self._save_term(term)

        self.audit_trail.log_event(
            event_type=AuditEventType.TERM_UPDATED,
            entity_type="term",
            entity_id=term.id,
            user_id=lender_id,
            metadata={k: v for k, v in changes.items() if v is not None}
        )
        return term

    def update_payment_preferences(
        self,
        term_id: str,
        lender_id: str,
        preferred_payment_methods: List[str],
        require_matching_payment_method: bool
    ) -> LenderTerm:
        """Replace the preferred rails on a term the lender owns"""
        term = self._require_owned(term_id, lender_id)
        term.preferred_payment_methods = _normalize_methods(preferred_payment_methods)
        term.require_matching_payment_method = bool(require_matching_payment_method)
        term.updated_at = datetime.now(timezone.utc)
        self._save_term(term)

        self.audit_trail.log_event(
            event_type=AuditEventType.TERM_PAYMENT_PREFERENCES_UPDATED,
            entity_type="term",
            entity_id=term.id,
            user_id=lender_id,
            metadata={
                "preferred_payment_methods": term.preferred_payment_methods,
                "require_matching_payment_method": term.require_matching_payment_method
            }
        )
        return term

    def get_term(self, term_id: str) -> Optional[LenderTerm]:
        data = self.storage.load(self.terms_table, term_id)
        if data:
            return self._term_from_dict(data)
        return None

    def require_term(self, term_id: str) -> LenderTerm:
        term = self.get_term(term_id)
        if not term:
            raise NotFoundError(f"Lender term {term_id} not found")
        return term

    def get_term_by_invite_token(self, invite_token: str) -> Optional[LenderTerm]:
        found = self.storage.find(self.terms_table, {"invite_token": invite_token})
        if found:
            return self._term_from_dict(found[0])
        return None

    def list_terms_for_lender(self, lender_id: str) -> List[LenderTerm]:
        terms = [self._term_from_dict(d) for d in self.storage.find(self.terms_table, {"lender_id": lender_id})]
        terms.sort(key=lambda t: t.created_at)
        return terms

    def _require_owned(self, term_id: str, lender_id: str) -> LenderTerm:
        term = self.require_term(term_id)
        if term.lender_id != lender_id:
            raise AuthorizationError("You can only modify your own lender terms")
        return term

    def _validated_limits(self, max_loan_amount, max_payback_days, fee_per_10_short,
                          fee_per_10_long, loan_multiple) -> Dict[str, Any]:
        max_amount = _to_decimal(max_loan_amount, "Max loan amount")
        short_rate = _to_decimal(fee_per_10_short, "Short payback fee")
        long_rate = _to_decimal(fee_per_10_long, "Long payback fee")
        multiple = _to_decimal(loan_multiple, "Loan multiple")
        try:
            max_days = int(max_payback_days)
        except (TypeError, ValueError):
            raise ValidationError("Max payback days is required")

        if min(max_amount, short_rate, long_rate, multiple) <= 0 or max_days <= 0:
            raise ValidationError("Loan limits and fee rates must be positive")

        return {
            "max_loan_amount": max_amount,
            "max_payback_days": max_days,
            "fee_per_10_short": short_rate,
            "fee_per_10_long": long_rate,
            "loan_multiple": multiple,
        }

    def _new_invite_token(self) -> str:
        while True:
            token = f"inv_{secrets.token_urlsafe(16)}"
            if not self.storage.find(self.terms_table, {"invite_token": token}):
                return token

    def _save_term(self, term: LenderTerm) -> None:
        self.storage.save(self.terms_table, term.id, term.to_dict())

    def _term_from_dict(self, data: Dict) -> LenderTerm:
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        for key in ('max_loan_amount', 'fee_per_10_short', 'fee_per_10_long', 'loan_multiple'):
            data[key] = Decimal(data[key])
        return LenderTerm(**data)
