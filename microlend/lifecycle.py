"""
Loan Lifecycle Module

Decides what a loan's status must become once a payment settles, and
reports reconciliation anomalies when payment history and loan state
disagree.

Every decision runs inside the per-loan lock (storage.record_lock) and
re-reads the loan and its payments before acting, so two repayments settling
at the same moment cannot both complete the loan or both miss the threshold.
Status writes go through LoanManager.update_status, which is additionally
version-guarded.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .loans import Loan, LoanManager, LoanStatus, LoanHealth, health_for_days_late
from .payments import Payment, PaymentLedger, TransferStatus, format_amount
from .notifications import NotificationCenter, NotificationType
from .errors import ReconciliationAnomaly
from .logging_config import get_logger, log_action


@dataclass
class LifecycleOutcome:
    """What applying a payment did to its loan"""
    loan: Optional[Loan]
    status_changed: bool = False
    total_repaid: Optional[Decimal] = None
    anomalies: List[ReconciliationAnomaly] = field(default_factory=list)


class LoanLifecycle:
    """
    Applies settled payments to loans and re-derives loan state from payment history
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        payment_ledger: PaymentLedger,
        notification_center: NotificationCenter,
        audit_trail: AuditTrail,
        overpayment_tolerance: Decimal = Decimal("1.00")
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.payment_ledger = payment_ledger
        self.notification_center = notification_center
        self.audit_trail = audit_trail
        self.overpayment_tolerance = Decimal(overpayment_tolerance)
        self.logger = get_logger("microlend.lifecycle")

    def apply_settled_payment(self, payment: Payment) -> LifecycleOutcome:
        """
        Advance the payment's loan as far as its payment history allows

        Funding moves PENDING to FUNDED; repayments complete the loan once the
        confirmed repayments cover total_payable. Re-applying the same payment
        is a no-op.

        Args:
            payment: A payment that has just been confirmed

        Returns:
            LifecycleOutcome with the current loan and any anomalies found
        """
        with self.storage.record_lock(self.loan_manager.loans_table, payment.loan_id):
            loan = self.loan_manager.require_loan(payment.loan_id)
            if payment.is_funding:
                return self._apply_funding(loan, payment)
            return self._apply_repayment(loan, payment)

    def mark_funded_on_initiation(self, loan_id: str, payment_id: str,
                                  user_id: Optional[str] = None) -> LifecycleOutcome:
        """Fund a PENDING loan when the lender starts a manual transfer"""
        with self.storage.record_lock(self.loan_manager.loans_table, loan_id):
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                return LifecycleOutcome(loan=loan)

            loan, changed = self.loan_manager.update_status(loan.id, LoanStatus.FUNDED)
            if changed:
                self._on_funded(loan, payment_id, user_id=user_id, at_initiation=True)
            return LifecycleOutcome(loan=loan, status_changed=changed)

    def mark_overdue(self, loan_id: str, now: datetime) -> Optional[Loan]:
        """
        Move a FUNDED loan past its payback date to OVERDUE

        Returns:
            The updated loan, or None if the loan is no longer FUNDED or not yet due
        """
        with self.storage.record_lock(self.loan_manager.loans_table, loan_id):
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status != LoanStatus.FUNDED:
                return None

            days_late = loan.days_late(now)
            if loan.payback_date >= now:
                return None

            health = health_for_days_late(days_late)
            loan, changed = self.loan_manager.update_status(loan.id, LoanStatus.OVERDUE, health=health)
            if changed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_STATUS_CHANGED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "from": LoanStatus.FUNDED.value,
                        "to": LoanStatus.OVERDUE.value,
                        "days_late": days_late,
                        "health": loan.health.value
                    }
                )
            return loan

    def degrade_health(self, loan_id: str, now: datetime) -> Optional[Loan]:
        """Re-grade an OVERDUE loan; health only ever gets worse"""
        with self.storage.record_lock(self.loan_manager.loans_table, loan_id):
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status != LoanStatus.OVERDUE:
                return None

            health = health_for_days_late(loan.days_late(now))
            loan, _ = self.loan_manager.update_status(loan.id, LoanStatus.OVERDUE, health=health)
            return loan

    def record_reminder(self, loan_id: str, health: LoanHealth) -> None:
        """Remember the health tier a reminder was last sent for"""
        with self.storage.record_lock(self.loan_manager.loans_table, loan_id):
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status == LoanStatus.OVERDUE:
                self.loan_manager.update_status(
                    loan.id, LoanStatus.OVERDUE, last_reminder_health=health.value
                )

    def reconcile_loan(self, loan_id: str) -> LifecycleOutcome:
        """
        Re-derive a loan's state from its payment history

        Funds a PENDING loan holding a confirmed funding payment, completes a
        loan whose confirmed repayments already cover total_payable, and
        reports anything that cannot be repaired automatically.
        """
        with self.storage.record_lock(self.loan_manager.loans_table, loan_id):
            loan = self.loan_manager.require_loan(loan_id)
            outcome = LifecycleOutcome(loan=loan)

            if loan.status == LoanStatus.PENDING and self.payment_ledger.has_confirmed_funding(loan.id):
                loan, changed = self.loan_manager.update_status(loan.id, LoanStatus.FUNDED)
                if changed:
                    self._on_funded(loan, payment_id=None)
                outcome.loan, outcome.status_changed = loan, changed

            total_repaid = self.payment_ledger.total_repaid(loan.id)
            outcome.total_repaid = total_repaid

            if total_repaid >= loan.total_payable and loan.status in (LoanStatus.FUNDED, LoanStatus.OVERDUE):
                loan, changed = self.loan_manager.update_status(loan.id, LoanStatus.COMPLETED)
                if changed:
                    self._on_completed(loan, total_repaid)
                outcome.loan = loan
                outcome.status_changed = outcome.status_changed or changed

            if loan.status == LoanStatus.COMPLETED and total_repaid < loan.total_payable:
                outcome.anomalies.append(self.report_anomaly(
                    loan.id, "completed_underpaid",
                    "Loan is COMPLETED but confirmed repayments do not cover total payable",
                    {"total_repaid": total_repaid, "total_payable": loan.total_payable}
                ))

            if loan.status in (LoanStatus.FUNDED, LoanStatus.OVERDUE, LoanStatus.COMPLETED):
                fundings = [p for p in self.payment_ledger.list_for_loan(loan.id)
                            if p.is_funding and p.transfer_status != TransferStatus.FAILED]
                if not fundings:
                    outcome.anomalies.append(self.report_anomaly(
                        loan.id, "funded_without_funding_payment",
                        f"Loan is {loan.status.value} but has no funding payment"
                    ))

            outcome.anomalies.extend(self.check_reconciliation(loan, total_repaid))
            return outcome

    def check_reconciliation(self, loan: Loan,
                             total_repaid: Optional[Decimal] = None) -> List[ReconciliationAnomaly]:
        """Report overpayment and disputed payments on completed loans"""
        if total_repaid is None:
            total_repaid = self.payment_ledger.total_repaid(loan.id)

        anomalies = []
        overpaid = total_repaid - loan.total_payable
        if overpaid > self.overpayment_tolerance:
            anomalies.append(self.report_anomaly(
                loan.id, "overpayment",
                f"Confirmed repayments exceed total payable by {overpaid}",
                {"total_repaid": total_repaid, "total_payable": loan.total_payable}
            ))

        if loan.status == LoanStatus.COMPLETED:
            disputed = self.payment_ledger.disputed_payments(loan.id)
            if disputed:
                anomalies.append(self.report_anomaly(
                    loan.id, "completed_with_disputes",
                    f"Completed loan has {len(disputed)} disputed payment(s)",
                    {"payment_ids": [p.id for p in disputed]}
                ))
        return anomalies

    def report_anomaly(
        self,
        loan_id: str,
        kind: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> ReconciliationAnomaly:
        """Log and audit an anomaly; never raised to the caller"""
        anomaly = ReconciliationAnomaly(loan_id, kind, message, details)
        log_action(
            self.logger, "warning", message,
            action="reconciliation_anomaly",
            resource=f"loan:{loan_id}",
            payment_id=(details or {}).get("payment_id"),
            extra={"kind": kind, **{k: str(v) for k, v in (details or {}).items()}}
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.RECONCILIATION_ANOMALY,
            entity_type="loan",
            entity_id=loan_id,
            metadata={"kind": kind, "message": message, **(details or {})}
        )
        return anomaly

    def _apply_funding(self, loan: Loan, payment: Payment) -> LifecycleOutcome:
        if loan.status == LoanStatus.DENIED:
            anomaly = self.report_anomaly(
                loan.id, "funding_on_denied_loan",
                "Funding payment settled on a denied loan",
                {"payment_id": payment.id}
            )
            return LifecycleOutcome(loan=loan, anomalies=[anomaly])

        if loan.status != LoanStatus.PENDING:
            return LifecycleOutcome(loan=loan)

        loan, changed = self.loan_manager.update_status(loan.id, LoanStatus.FUNDED)
        if changed:
            self._on_funded(loan, payment.id)
        return LifecycleOutcome(loan=loan, status_changed=changed)

    def _apply_repayment(self, loan: Loan, payment: Payment) -> LifecycleOutcome:
        total_repaid = self.payment_ledger.total_repaid(loan.id)
        outcome = LifecycleOutcome(loan=loan, total_repaid=total_repaid)

        if loan.status == LoanStatus.PENDING:
            outcome.anomalies.append(self.report_anomaly(
                loan.id, "repayment_before_funding",
                "Repayment settled on a loan that was never funded",
                {"payment_id": payment.id}
            ))
            return outcome

        if loan.status == LoanStatus.DENIED:
            outcome.anomalies.append(self.report_anomaly(
                loan.id, "repayment_on_denied_loan",
                "Repayment settled on a denied loan",
                {"payment_id": payment.id}
            ))
            return outcome

        if total_repaid >= loan.total_payable and loan.status in (LoanStatus.FUNDED, LoanStatus.OVERDUE):
            loan, changed = self.loan_manager.update_status(loan.id, LoanStatus.COMPLETED)
            if changed:
                self._on_completed(loan, total_repaid)
            outcome.loan, outcome.status_changed = loan, changed

        outcome.anomalies.extend(self.check_reconciliation(loan, total_repaid))
        return outcome

    def _on_funded(self, loan: Loan, payment_id: Optional[str],
                   user_id: Optional[str] = None, at_initiation: bool = False) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_FUNDED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=user_id,
            metadata={"payment_id": payment_id, "at_initiation": at_initiation}
        )
        self.notification_center.create(
            loan.borrower_id, loan.id, NotificationType.LOAN_FUNDED,
            f"Your loan of {format_amount(loan.amount)} has been funded."
        )
        self.logger.info(f"Loan {loan.id} funded")

    def _on_completed(self, loan: Loan, total_repaid: Decimal) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_COMPLETED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"total_repaid": total_repaid, "total_payable": loan.total_payable}
        )
        message = f"Loan of {format_amount(loan.amount)} has been fully repaid."
        self.notification_center.create_many([
            (loan.lender_id, loan.id, NotificationType.LOAN_COMPLETED, message),
            (loan.borrower_id, loan.id, NotificationType.LOAN_COMPLETED, message),
        ])
        self.logger.info(f"Loan {loan.id} completed, repaid {total_repaid} of {loan.total_payable}")
