"""
Tests for applying settled payments to loans and reconciliation
"""

import pytest
from decimal import Decimal

from microlend.audit import AuditEventType
from microlend.errors import ValidationError
from microlend.loans import LoanStatus
from microlend.notifications import NotificationType
from microlend.payments import PaymentMethod, PartyRole, TransferStatus


def anomaly_kinds(scenario, loan_id):
    events = scenario.system.audit_trail.get_events_for_entity("loan", loan_id)
    return [e.metadata["kind"] for e in events if e.event_type == AuditEventType.RECONCILIATION_ANOMALY]


class TestFunding:
    """Test PENDING -> FUNDED on funding payments"""

    def test_instant_funding_funds_loan(self, scenario):
        loan = scenario.fund(scenario.request_loan())

        assert loan.status == LoanStatus.FUNDED
        assert scenario.system.payment_ledger.has_confirmed_funding(loan.id)
        assert scenario.audit_count(AuditEventType.LOAN_FUNDED, loan.id) == 1

        notifications = scenario.system.notification_center.list_for_user(scenario.borrower.id)
        assert [n.message for n in notifications] == ["Your loan of $50.00 has been funded."]

    def test_reapplying_funding_is_noop(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        payment = scenario.system.payment_ledger.list_for_loan(loan.id)[0]

        outcome = scenario.system.lifecycle.apply_settled_payment(payment)

        assert outcome.loan.status == LoanStatus.FUNDED
        assert not outcome.status_changed
        assert scenario.audit_count(AuditEventType.LOAN_FUNDED, loan.id) == 1

    def test_second_funding_leaves_status(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        result = scenario.engine.initiate_payment(loan.id, "10", "INTERNAL_WALLET", "LENDER", "BORROWER")

        assert result.loan.status == LoanStatus.FUNDED
        assert scenario.audit_count(AuditEventType.LOAN_FUNDED, loan.id) == 1

    def test_funding_on_denied_loan_is_anomaly(self, scenario):
        system = scenario.system
        loan = scenario.request_loan()
        payment = system.payment_ledger.create_payment(
            loan.id, "50", PaymentMethod.INTERNAL_WALLET, PartyRole.LENDER, PartyRole.BORROWER
        )
        payment = system.payment_ledger.update(payment, confirmed=True, transfer_status=TransferStatus.COMPLETED)
        system.loan_manager.deny_loan(loan.id, scenario.lender.id)

        outcome = system.lifecycle.apply_settled_payment(payment)

        assert outcome.loan.status == LoanStatus.DENIED
        assert [a.kind for a in outcome.anomalies] == ["funding_on_denied_loan"]


class TestRepayment:
    """Test completion when confirmed repayments cover total payable"""

    def test_partial_repayment_keeps_loan_funded(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        result = scenario.repay(loan, "30")

        assert result.loan.status == LoanStatus.FUNDED
        assert scenario.system.payment_ledger.total_repaid(loan.id) == Decimal("30")

    def test_covering_repayment_completes_loan(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        scenario.repay(loan, "30")
        result = scenario.repay(loan, "25")

        assert result.loan.status == LoanStatus.COMPLETED
        assert scenario.audit_count(AuditEventType.LOAN_COMPLETED, loan.id) == 1

        for user in (scenario.lender, scenario.borrower):
            completed = [n for n in scenario.system.notification_center.list_for_user(user.id)
                         if n.notification_type == NotificationType.LOAN_COMPLETED]
            assert [n.message for n in completed] == ["Loan of $50.00 has been fully repaid."]

    def test_overdue_loan_completes(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        scenario.system.loan_manager.update_status(loan.id, LoanStatus.OVERDUE)

        result = scenario.repay(loan, "55")

        assert result.loan.status == LoanStatus.COMPLETED

    def test_completion_is_applied_once(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        result = scenario.repay(loan, "55")

        outcome = scenario.system.lifecycle.apply_settled_payment(result.payment)

        assert not outcome.status_changed
        assert scenario.audit_count(AuditEventType.LOAN_COMPLETED, loan.id) == 1

    def test_completed_loan_rejects_repayment(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        scenario.repay(loan, "55")

        with pytest.raises(ValidationError) as exc_info:
            scenario.repay(loan, "5")
        assert exc_info.value.message == "Loan is already fully repaid"

    def test_overpayment_is_reported(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        result = scenario.repay(loan, "60")

        assert result.loan.status == LoanStatus.COMPLETED
        assert [a.kind for a in result.anomalies] == ["overpayment"]
        assert anomaly_kinds(scenario, loan.id) == ["overpayment"]

    def test_overpayment_within_tolerance(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        result = scenario.repay(loan, "56")

        assert result.anomalies == []

    def test_repayment_before_funding(self, scenario):
        loan = scenario.request_loan()
        result = scenario.repay(loan, "55")

        assert result.loan.status == LoanStatus.PENDING
        assert [a.kind for a in result.anomalies] == ["repayment_before_funding"]


class TestReconcileLoan:
    """Test re-deriving loan state from payment history"""

    def test_reconcile_consistent_loan(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        outcome = scenario.system.lifecycle.reconcile_loan(loan.id)

        assert outcome.anomalies == []
        assert outcome.total_repaid == Decimal("0")

    def test_reconcile_completes_covered_loan(self, scenario):
        system = scenario.system
        loan = scenario.fund(scenario.request_loan())
        payment = system.payment_ledger.create_payment(
            loan.id, "55", PaymentMethod.INTERNAL_WALLET, PartyRole.BORROWER, PartyRole.LENDER
        )
        system.payment_ledger.update(payment, confirmed=True, transfer_status=TransferStatus.COMPLETED)

        outcome = system.lifecycle.reconcile_loan(loan.id)

        assert outcome.loan.status == LoanStatus.COMPLETED
        assert outcome.status_changed

    def test_reconcile_funds_pending_loan_with_confirmed_funding(self, scenario):
        system = scenario.system
        loan = scenario.request_loan()
        payment = system.payment_ledger.create_payment(
            loan.id, "50", PaymentMethod.INTERNAL_WALLET, PartyRole.LENDER, PartyRole.BORROWER
        )
        system.payment_ledger.update(payment, confirmed=True, transfer_status=TransferStatus.COMPLETED)

        outcome = system.lifecycle.reconcile_loan(loan.id)

        assert outcome.loan.status == LoanStatus.FUNDED

    def test_reconcile_reports_funded_without_funding(self, scenario):
        loan = scenario.request_loan()
        scenario.system.loan_manager.update_status(loan.id, LoanStatus.FUNDED)

        outcome = scenario.system.lifecycle.reconcile_loan(loan.id)

        assert [a.kind for a in outcome.anomalies] == ["funded_without_funding_payment"]

    def test_reconcile_reports_completed_underpaid(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        scenario.system.loan_manager.update_status(loan.id, LoanStatus.COMPLETED)

        outcome = scenario.system.lifecycle.reconcile_loan(loan.id)

        assert "completed_underpaid" in [a.kind for a in outcome.anomalies]
