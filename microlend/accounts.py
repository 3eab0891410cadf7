"""
Payment Account Module

A user's registered source or destination for a payment rail: a CashApp
handle, a PayPal email or a Zelle email/phone. Each user holds at most one
default account per account type; the settlement engine resolves payer and
receiver accounts from those defaults.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, TYPE_CHECKING
from enum import Enum
import re
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError

if TYPE_CHECKING:
    from .terms import LenderTerm


class AccountType(Enum):
    """Rails a user can register an account for"""
    CASHAPP = "CASHAPP"
    PAYPAL = "PAYPAL"
    ZELLE = "ZELLE"


IDENTIFIER_LABELS = {
    AccountType.CASHAPP: "CashApp handle",
    AccountType.PAYPAL: "PayPal email",
    AccountType.ZELLE: "Zelle email or phone",
}

_PHONE_RE = re.compile(r"^\+?[0-9][0-9\-\s().]{8,}$")


@dataclass
class PaymentAccount(StorageRecord):
    """Registered rail account owned by a user"""
    user_id: str
    account_type: AccountType
    identifier: str
    nickname: Optional[str] = None
    is_verified: bool = False
    is_default: bool = False


@dataclass
class PaymentMethodCheck:
    """Outcome of matching a borrower's accounts against a term's preferred rails"""
    valid: bool
    message: str
    preferred_methods: List[str]
    borrower_methods: List[str]

    def to_dict(self) -> Dict:
        return {
            "valid": self.valid,
            "message": self.message,
            "preferredMethods": self.preferred_methods,
            "borrowerMethods": self.borrower_methods,
        }


def normalize_identifier(account_type: AccountType, identifier: Optional[str]) -> str:
    """Validate a rail identifier and return its canonical form"""
    value = (identifier or "").strip()
    if account_type == AccountType.CASHAPP:
        if len(value) < 2 or not value.startswith("$"):
            raise ValidationError("A valid CashApp handle starting with $ is required")
        return value
    if account_type == AccountType.PAYPAL:
        if "@" not in value:
            raise ValidationError("A valid PayPal email is required")
        return value.lower()
    if "@" in value:
        return value.lower()
    if not _PHONE_RE.match(value):
        raise ValidationError("A valid Zelle email or phone number is required")
    return re.sub(r"[^0-9+]", "", value)


class PaymentAccountManager:
    """
    CRUD over payment accounts, scoped to the owning user
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.accounts_table = "payment_accounts"

    def create_account(
        self,
        user_id: str,
        account_type: AccountType,
        identifier: str,
        nickname: Optional[str] = None,
        is_default: bool = False
    ) -> PaymentAccount:
        """
        Register a payment account

        The first account of a type becomes the default. Asking for is_default
        clears the previous default of the same type in the same write scope.

        Args:
            user_id: Owner
            account_type: Rail the account belongs to
            identifier: Handle, email or phone depending on the rail
            nickname: Optional display name
            is_default: Make this the default account for its type

        Returns:
            Created PaymentAccount (unverified)
        """
        identifier = normalize_identifier(account_type, identifier)

        with self.storage.record_lock("payment_account_owner", user_id):
            duplicates = self.storage.find(self.accounts_table, {
                "account_type": account_type.value,
                "identifier": identifier
            })
            if duplicates:
                raise ValidationError(
                    f"This {IDENTIFIER_LABELS[account_type]} is already linked to your account"
                )

            existing = self._accounts_of_type(user_id, account_type)
            make_default = bool(is_default) or not existing

            now = datetime.now(timezone.utc)
            account = PaymentAccount(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                account_type=account_type,
                identifier=identifier,
                nickname=nickname,
                is_default=make_default
            )

            with self.storage.atomic():
                if make_default:
                    self._clear_defaults(existing, now)
                self._save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_ACCOUNT_CREATED,
            entity_type="payment_account",
            entity_id=account.id,
            user_id=user_id,
            metadata={"account_type": account_type.value, "is_default": account.is_default}
        )
        return account

    def update_account(
        self,
        account_id: str,
        user_id: str,
        nickname: Optional[str] = None,
        is_default: Optional[bool] = None
    ) -> PaymentAccount:
        """Change nickname or default flag on an account the user owns"""
        with self.storage.record_lock("payment_account_owner", user_id):
            account = self._require_owned(account_id, user_id)
            now = datetime.now(timezone.utc)

            if nickname is not None:
                account.nickname = nickname

            with self.storage.atomic():
                if is_default:
                    others = [a for a in self._accounts_of_type(user_id, account.account_type)
                              if a.id != account.id]
                    self._clear_defaults(others, now)
                    account.is_default = True
                elif is_default is not None:
                    account.is_default = False

                account.updated_at = now
                self._save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_ACCOUNT_UPDATED,
            entity_type="payment_account",
            entity_id=account.id,
            user_id=user_id,
            metadata={"nickname": nickname, "is_default": is_default}
        )
        return account

    def delete_account(self, account_id: str, user_id: str) -> None:
        with self.storage.record_lock("payment_account_owner", user_id):
            account = self._require_owned(account_id, user_id)
            self.storage.delete(self.accounts_table, account.id)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_ACCOUNT_DELETED,
            entity_type="payment_account",
            entity_id=account.id,
            user_id=user_id,
            metadata={"account_type": account.account_type.value}
        )

    def verify_account(self, account_id: str) -> PaymentAccount:
        """Mark an account verified (called by the external verification step)"""
        account = self.require_account(account_id)
        account.is_verified = True
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)
        return account

    def get_account(self, account_id: str) -> Optional[PaymentAccount]:
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def require_account(self, account_id: str) -> PaymentAccount:
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError(f"Payment account {account_id} not found")
        return account

    def list_accounts(self, user_id: str) -> List[PaymentAccount]:
        """User's accounts, defaults first, then newest first"""
        accounts = [self._account_from_dict(d)
                    for d in self.storage.find(self.accounts_table, {"user_id": user_id})]
        accounts.sort(key=lambda a: a.created_at, reverse=True)
        accounts.sort(key=lambda a: not a.is_default)
        return accounts

    def get_default_account(
        self,
        user_id: str,
        account_type: AccountType,
        verified_only: bool = True
    ) -> Optional[PaymentAccount]:
        for account in self._accounts_of_type(user_id, account_type):
            if account.is_default and (account.is_verified or not verified_only):
                return account
        return None

    def validate_payment_methods(self, term: 'LenderTerm', borrower_id: str) -> PaymentMethodCheck:
        """
        Check whether a borrower can pay through one of the term's preferred rails

        Args:
            term: Lender term carrying the preferences
            borrower_id: Borrower whose verified accounts are inspected

        Returns:
            PaymentMethodCheck (valid when the term does not require a match)
        """
        preferred = list(term.preferred_payment_methods or [])
        if not preferred or not term.require_matching_payment_method:
            return PaymentMethodCheck(True, "All payment methods allowed", preferred, [])

        borrower_methods = sorted({
            a.account_type.value for a in self.list_accounts(borrower_id) if a.is_verified
        })
        has_match = any(method in borrower_methods for method in preferred)
        message = (
            "Borrower has matching payment method" if has_match
            else "Borrower does not have any of the preferred payment methods"
        )
        return PaymentMethodCheck(has_match, message, preferred, borrower_methods)

    def _accounts_of_type(self, user_id: str, account_type: AccountType) -> List[PaymentAccount]:
        return [self._account_from_dict(d) for d in self.storage.find(self.accounts_table, {
            "user_id": user_id,
            "account_type": account_type.value
        })]

    def _clear_defaults(self, accounts: List[PaymentAccount], now: datetime) -> None:
        for other in accounts:
            if other.is_default:
                other.is_default = False
                other.updated_at = now
                self._save_account(other)

    def _require_owned(self, account_id: str, user_id: str) -> PaymentAccount:
        account = self.get_account(account_id)
        if not account or account.user_id != user_id:
            raise NotFoundError("Payment account not found")
        return account

    def _save_account(self, account: PaymentAccount) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: PaymentAccount) -> Dict:
        result = account.to_dict()
        result['account_type'] = account.account_type.value
        return result

    def _account_from_dict(self, data: Dict) -> PaymentAccount:
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['account_type'] = AccountType(data['account_type'])
        return PaymentAccount(**data)
