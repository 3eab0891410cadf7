"""
Lending system container and request identity dependencies
"""

from decimal import Decimal
from typing import Dict, Optional

from fastapi import Header, HTTPException

from ..storage import InMemoryStorage, SQLiteStorage
from ..audit import AuditTrail
from ..users import UserManager
from ..accounts import PaymentAccountManager
from ..terms import LenderTermManager
from ..relationships import RelationshipManager
from ..loans import LoanManager
from ..payments import PaymentLedger, PaymentMethod
from ..notifications import NotificationCenter, EmailSender, LogEmailSender, SmtpEmailSender
from ..lifecycle import LoanLifecycle
from ..settlement import SettlementEngine
from ..scheduler import OverdueSweep, SweepScheduler
from ..rails import PaymentRail, build_rails
from ..config import MicrolendConfig, get_config


class LendingSystem:
    """Lending system with all components initialized"""

    def __init__(
        self,
        use_sqlite: bool = True,
        config: Optional[MicrolendConfig] = None,
        rails: Optional[Dict[PaymentMethod, PaymentRail]] = None,
        email_sender: Optional[EmailSender] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        if use_sqlite:
            self.storage = SQLiteStorage(self.config.database_path)
        else:
            self.storage = InMemoryStorage()

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.user_manager = UserManager(self.storage)
        self.account_manager = PaymentAccountManager(self.storage, self.audit_trail)
        self.term_manager = LenderTermManager(self.storage, self.user_manager, self.audit_trail)
        self.relationship_manager = RelationshipManager(self.storage, self.audit_trail)
        self.loan_manager = LoanManager(
            self.storage, self.user_manager, self.relationship_manager,
            self.term_manager, self.audit_trail,
            default_fee_per_10_short=Decimal(self.config.default_fee_per_10_short),
            default_fee_per_10_long=Decimal(self.config.default_fee_per_10_long)
        )
        self.payment_ledger = PaymentLedger(self.storage)
        self.notification_center = NotificationCenter(self.storage)

        # Settlement
        self.lifecycle = LoanLifecycle(
            self.storage, self.loan_manager, self.payment_ledger,
            self.notification_center, self.audit_trail,
            overpayment_tolerance=Decimal(self.config.overpayment_tolerance)
        )
        self.rails = rails if rails is not None else build_rails(self.config)
        self.settlement_engine = SettlementEngine(
            self.loan_manager, self.payment_ledger, self.account_manager,
            self.lifecycle, self.notification_center, self.audit_trail,
            self.rails,
            manual_funding_at_initiation=self.config.manual_funding_at_initiation,
            require_verified_accounts=self.config.require_verified_accounts,
            paypal_auto_payout_repayments=self.config.paypal_auto_payout_repayments,
            manual_confirmation_retries=self.config.manual_confirmation_retries
        )

        # Overdue sweep
        self.email_sender = email_sender or self._create_email_sender()
        self.overdue_sweep = OverdueSweep(
            self.loan_manager, self.lifecycle, self.user_manager,
            self.email_sender, self.audit_trail,
            reminder_policy=self.config.reminder_policy
        )
        self.sweep_scheduler = SweepScheduler(self.overdue_sweep, hour_utc=self.config.sweep_hour_utc)

    def _create_email_sender(self) -> EmailSender:
        """Create email sender based on configuration"""
        # Only send real email if an SMTP host is configured
        if not self.config.smtp_host:
            return LogEmailSender()

        return SmtpEmailSender(
            host=self.config.smtp_host,
            port=self.config.smtp_port,
            username=self.config.smtp_username,
            password=self.config.smtp_password,
            from_address=self.config.email_from,
            use_tls=self.config.smtp_use_tls
        )

    def close(self) -> None:
        self.sweep_scheduler.stop()
        for rail in self.rails.values():
            rail.close()
        self.storage.close()


# Global lending system instance, created on first use
lending_system: Optional[LendingSystem] = None


# Dependency to get lending system
def get_lending_system() -> LendingSystem:
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem(use_sqlite=get_config().use_sqlite)
    return lending_system


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, established upstream by the authentication gateway"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id
