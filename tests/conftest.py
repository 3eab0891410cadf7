"""
Shared fixtures: an in-memory lending system with mock rails, and a
lender/borrower scenario builder on top of it.
"""

import pytest
from decimal import Decimal

from microlend.api.auth import LendingSystem
from microlend.config import MicrolendConfig
from microlend.notifications import LogEmailSender
from microlend.payments import PaymentMethod
from microlend.rails import InternalWalletRail, ManualTransferRail, MockStripeRail, MockPayPalRail
from microlend.users import UserRole
from microlend.accounts import AccountType


def make_rails(stripe=None, paypal=None):
    return {
        PaymentMethod.INTERNAL_WALLET: InternalWalletRail(),
        PaymentMethod.CASHAPP: ManualTransferRail("CASHAPP"),
        PaymentMethod.ZELLE: ManualTransferRail("ZELLE"),
        PaymentMethod.STRIPE: stripe or MockStripeRail(),
        PaymentMethod.PAYPAL: paypal or MockPayPalRail(),
    }


def make_system(rails=None, **config_overrides):
    config = MicrolendConfig(**config_overrides)
    return LendingSystem(
        use_sqlite=False,
        config=config,
        rails=rails or make_rails(),
        email_sender=LogEmailSender()
    )


class Scenario:
    """A lender and a borrower with a confirmed relationship and a 50/7/1 style term"""

    def __init__(self, system: LendingSystem):
        self.system = system
        self.engine = system.settlement_engine
        self.lender = system.user_manager.create_user("Lena Lender", "lena@example.com", UserRole.LENDER)
        self.borrower = system.user_manager.create_user("Bo Borrower", "bo@example.com", UserRole.BORROWER)
        self.relationship = system.relationship_manager.create_relationship(self.lender.id, self.borrower.id)
        self.term = system.term_manager.create_term(
            self.lender.id,
            max_loan_amount="100",
            max_payback_days=30,
            fee_per_10_short="1",
            fee_per_10_long="2"
        )

    def add_account(self, user, account_type: AccountType, identifier: str, verified: bool = True):
        account = self.system.account_manager.create_account(user.id, account_type, identifier)
        if verified:
            account = self.system.account_manager.verify_account(account.id)
        return account

    def add_cashapp_accounts(self):
        self.lender_cashapp = self.add_account(self.lender, AccountType.CASHAPP, "$lena")
        self.borrower_cashapp = self.add_account(self.borrower, AccountType.CASHAPP, "$bo")

    def add_paypal_accounts(self):
        self.lender_paypal = self.add_account(self.lender, AccountType.PAYPAL, "lena@paypal.test")
        self.borrower_paypal = self.add_account(self.borrower, AccountType.PAYPAL, "bo@paypal.test")

    def request_loan(self, amount="50", payback_days=7, now=None):
        return self.system.loan_manager.request_loan(
            borrower_id=self.borrower.id,
            lender_id=self.lender.id,
            amount=amount,
            payback_days=payback_days,
            lender_term_id=self.term.id,
            signed_by="Bo Borrower",
            now=now
        )

    def fund(self, loan):
        self.engine.initiate_payment(loan.id, loan.amount, "INTERNAL_WALLET", "LENDER", "BORROWER")
        return self.loan(loan.id)

    def repay(self, loan, amount, method="INTERNAL_WALLET"):
        return self.engine.initiate_payment(loan.id, Decimal(str(amount)), method, "BORROWER", "LENDER")

    def loan(self, loan_id):
        return self.system.loan_manager.require_loan(loan_id)

    def audit_count(self, event_type, loan_id=None):
        events = self.system.audit_trail.get_events_by_type(event_type)
        if loan_id:
            events = [e for e in events if e.entity_id == loan_id]
        return len(events)


@pytest.fixture
def system():
    return make_system()


@pytest.fixture
def scenario(system):
    return Scenario(system)
