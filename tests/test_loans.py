"""
Tests for loan requests, the transition table and health grading
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from microlend.loans import (
    LoanStatus, LoanHealth, validate_transition, worse_health, health_for_days_late
)
from microlend.relationships import RelationshipStatus
from microlend.users import UserRole
from microlend.audit import AuditEventType
from microlend.errors import (
    AuthorizationError, IllegalTransitionError, NotFoundError, ValidationError
)


class TestTransitionTable:
    """Test the closed loan state machine"""

    @pytest.mark.parametrize("current,target", [
        (LoanStatus.PENDING, LoanStatus.FUNDED),
        (LoanStatus.PENDING, LoanStatus.DENIED),
        (LoanStatus.FUNDED, LoanStatus.OVERDUE),
        (LoanStatus.FUNDED, LoanStatus.COMPLETED),
        (LoanStatus.OVERDUE, LoanStatus.COMPLETED),
        (LoanStatus.COMPLETED, LoanStatus.COMPLETED),
    ])
    def test_legal_transitions(self, current, target):
        validate_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (LoanStatus.PENDING, LoanStatus.COMPLETED),
        (LoanStatus.PENDING, LoanStatus.OVERDUE),
        (LoanStatus.COMPLETED, LoanStatus.FUNDED),
        (LoanStatus.COMPLETED, LoanStatus.OVERDUE),
        (LoanStatus.DENIED, LoanStatus.FUNDED),
        (LoanStatus.OVERDUE, LoanStatus.FUNDED),
    ])
    def test_illegal_transitions(self, current, target):
        with pytest.raises(IllegalTransitionError):
            validate_transition(current, target)


class TestHealth:
    def test_health_never_improves(self):
        assert worse_health(LoanHealth.FAILING, LoanHealth.BEHIND) == LoanHealth.FAILING
        assert worse_health(LoanHealth.BEHIND, LoanHealth.DEFAULTED) == LoanHealth.DEFAULTED
        assert worse_health(LoanHealth.GOOD, LoanHealth.GOOD) == LoanHealth.GOOD

    @pytest.mark.parametrize("days,health", [
        (1, LoanHealth.BEHIND),
        (14, LoanHealth.BEHIND),
        (15, LoanHealth.FAILING),
        (30, LoanHealth.FAILING),
        (31, LoanHealth.DEFAULTED),
    ])
    def test_health_for_days_late(self, days, health):
        assert health_for_days_late(days) == health


class TestLoanRequests:
    """Test LoanManager.request_loan validations"""

    def test_request_prices_loan_from_term(self, scenario):
        loan = scenario.request_loan("50", 7)

        assert loan.status == LoanStatus.PENDING
        assert loan.health == LoanHealth.GOOD
        assert loan.fee_amount == Decimal("5.00")
        assert loan.total_payable == Decimal("55.00")
        assert loan.lender_term_id == scenario.term.id
        assert scenario.audit_count(AuditEventType.LOAN_CREATED, loan.id) == 1

    def test_days_late(self, scenario):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        loan = scenario.request_loan(now=now)

        assert loan.days_late(now + timedelta(days=7)) == 0
        assert loan.days_late(now + timedelta(days=10)) == 3

    def test_amount_over_maximum(self, scenario):
        with pytest.raises(ValidationError) as exc_info:
            scenario.request_loan("110", 7)
        assert "maximum" in exc_info.value.message

    def test_payback_over_maximum(self, scenario):
        with pytest.raises(ValidationError):
            scenario.request_loan("50", 31)

    def test_amount_must_match_multiple(self, scenario):
        with pytest.raises(ValidationError) as exc_info:
            scenario.request_loan("55", 7)
        assert exc_info.value.message == "Amount must be a multiple of 10"

    def test_single_active_loan_per_term(self, scenario):
        scenario.request_loan()
        with pytest.raises(ValidationError) as exc_info:
            scenario.request_loan()
        assert exc_info.value.message == "You have existing active loans. Cannot request a new loan."

    def test_blocked_relationship(self, scenario):
        system = scenario.system
        system.relationship_manager.set_status(
            scenario.relationship.id, scenario.lender.id, RelationshipStatus.BLOCKED
        )
        with pytest.raises(ValidationError):
            scenario.request_loan()

    def test_term_of_another_lender(self, scenario):
        system = scenario.system
        other = system.user_manager.create_user("Olga", "olga@example.com", UserRole.LENDER)
        other_term = system.term_manager.create_term(other.id, "100", 30, "1", "2")

        with pytest.raises(ValidationError) as exc_info:
            system.loan_manager.request_loan(
                scenario.borrower.id, scenario.lender.id, "50", 7, lender_term_id=other_term.id
            )
        assert exc_info.value.message == "Lender term does not belong to this lender"

    def test_missing_fields(self, scenario):
        with pytest.raises(ValidationError) as exc_info:
            scenario.system.loan_manager.request_loan(scenario.borrower.id, scenario.lender.id, None, 7)
        assert exc_info.value.message == "Missing required fields"

    def test_listing(self, scenario):
        loan = scenario.request_loan()
        manager = scenario.system.loan_manager

        assert [l.id for l in manager.list_loans_for_borrower(scenario.borrower.id)] == [loan.id]
        assert [l.id for l in manager.list_loans_for_lender(scenario.lender.id)] == [loan.id]
        assert [l.id for l in manager.find_loans_by_status(LoanStatus.PENDING)] == [loan.id]


class TestLoanStatusWrites:
    """Test deny and version-guarded status updates"""

    def test_deny_pending_loan(self, scenario):
        loan = scenario.request_loan()
        denied = scenario.system.loan_manager.deny_loan(loan.id, scenario.lender.id)

        assert denied.status == LoanStatus.DENIED
        assert scenario.audit_count(AuditEventType.LOAN_DENIED, loan.id) == 1

    def test_only_lender_can_deny(self, scenario):
        loan = scenario.request_loan()
        with pytest.raises(AuthorizationError):
            scenario.system.loan_manager.deny_loan(loan.id, scenario.borrower.id)

    def test_cannot_deny_funded_loan(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        with pytest.raises(IllegalTransitionError):
            scenario.system.loan_manager.deny_loan(loan.id, scenario.lender.id)

    def test_update_status_bumps_version(self, scenario):
        loan = scenario.request_loan()
        manager = scenario.system.loan_manager

        updated, changed = manager.update_status(loan.id, LoanStatus.FUNDED)
        assert changed
        assert updated.version == loan.version + 1

        again, changed = manager.update_status(loan.id, LoanStatus.FUNDED)
        assert not changed
        assert again.version == updated.version

    def test_update_status_only_worsens_health(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        manager = scenario.system.loan_manager

        manager.update_status(loan.id, LoanStatus.OVERDUE, health=LoanHealth.FAILING)
        updated, _ = manager.update_status(loan.id, LoanStatus.OVERDUE, health=LoanHealth.BEHIND)

        assert updated.health == LoanHealth.FAILING

    def test_require_missing_loan(self, system):
        with pytest.raises(NotFoundError) as exc_info:
            system.loan_manager.require_loan("nope")
        assert exc_info.value.message == "Loan nope not found"
