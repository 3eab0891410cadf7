"""
Tests for the settlement engine: initiation, provider confirmation and
manual dual-party attestation
"""

import pytest
from decimal import Decimal

from microlend.audit import AuditEventType
from microlend.accounts import AccountType
from microlend.users import UserRole
from microlend.loans import LoanStatus
from microlend.notifications import NotificationType
from microlend.payments import PaymentMethod, TransferStatus, ManualConfirmationStatus
from microlend.rails import MockStripeRail, MockPayPalRail, InternalWalletRail
from microlend.errors import (
    AccountMissingError, AuthorizationError, ExternalRailError, NotFoundError, ValidationError
)

from conftest import Scenario, make_rails, make_system


def notifications_of(scenario, user, notification_type):
    return [
        n for n in scenario.system.notification_center.list_for_user(user.id)
        if n.notification_type == notification_type
    ]


def anomaly_kinds(scenario, loan_id):
    events = scenario.system.audit_trail.get_events_for_entity("loan", loan_id)
    return [e.metadata["kind"] for e in events if e.event_type == AuditEventType.RECONCILIATION_ANOMALY]


class TestInitiatePayment:
    """Test validation and instant settlement in initiate_payment"""

    def test_instant_payment_settles(self, scenario):
        loan = scenario.request_loan()
        result = scenario.engine.initiate_payment(loan.id, "50", "INTERNAL_WALLET", "LENDER", "BORROWER")

        assert result.message == "Payment completed"
        assert result.payment.confirmed
        assert result.payment.transfer_status == TransferStatus.COMPLETED
        assert result.payment.external_transaction_id.startswith("internal_")
        assert result.loan.status == LoanStatus.FUNDED
        assert scenario.audit_count(AuditEventType.PAYMENT_SETTLED) == 1

    def test_to_dict_shape(self, scenario):
        loan = scenario.request_loan()
        result = scenario.engine.initiate_payment(loan.id, "50", "INTERNAL_WALLET", "LENDER", "BORROWER")
        data = result.to_dict()

        assert data["success"] is True
        assert data["loanStatus"] == "FUNDED"
        assert data["payment"]["amount"] == "50"
        assert "clientSecret" not in data

    def test_same_roles_rejected(self, scenario):
        loan = scenario.request_loan()
        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.initiate_payment(loan.id, "50", "INTERNAL_WALLET", "LENDER", "LENDER")
        assert exc_info.value.message == "Payer and receiver must be opposite sides of the loan"

    def test_denied_loan_rejected(self, scenario):
        loan = scenario.request_loan()
        scenario.system.loan_manager.deny_loan(loan.id, scenario.lender.id)

        with pytest.raises(ValidationError) as exc_info:
            scenario.fund(loan)
        assert exc_info.value.message == "Cannot make payments on a denied loan"

    @pytest.mark.parametrize("amount,message", [
        ("0", "Amount must be positive"),
        ("-1", "Amount must be positive"),
        (None, "Amount is required"),
    ])
    def test_invalid_amount(self, scenario, amount, message):
        loan = scenario.request_loan()
        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.initiate_payment(loan.id, amount, "INTERNAL_WALLET", "LENDER", "BORROWER")
        assert exc_info.value.message == message

    def test_unknown_method(self, scenario):
        loan = scenario.request_loan()
        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.initiate_payment(loan.id, "50", "BITCOIN", "LENDER", "BORROWER")
        assert exc_info.value.message == "Invalid payment method: BITCOIN"

    def test_unconfigured_rail(self):
        system = make_system(rails={PaymentMethod.INTERNAL_WALLET: InternalWalletRail()})
        scenario = Scenario(system)
        loan = scenario.request_loan()

        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.initiate_payment(loan.id, "50", "STRIPE", "LENDER", "BORROWER")
        assert exc_info.value.message == "Payment method STRIPE is not available"

    def test_missing_loan(self, scenario):
        with pytest.raises(NotFoundError):
            scenario.engine.initiate_payment("missing", "50", "INTERNAL_WALLET", "LENDER", "BORROWER")

    def test_caller_must_be_payer(self, scenario):
        loan = scenario.request_loan()
        with pytest.raises(AuthorizationError) as exc_info:
            scenario.engine.initiate_payment(
                loan.id, "50", "INTERNAL_WALLET", "LENDER", "BORROWER", user_id=scenario.borrower.id
            )
        assert exc_info.value.message == "You are not the lender on this loan"

    def test_missing_payer_account(self, scenario):
        loan = scenario.request_loan()
        with pytest.raises(AccountMissingError) as exc_info:
            scenario.engine.initiate_payment(loan.id, "50", "STRIPE", "LENDER", "BORROWER")

        assert exc_info.value.message == "lender needs to add a CashApp account first"
        assert exc_info.value.to_dict()["requiresAccount"] == "lender"
        assert scenario.system.payment_ledger.list_for_loan(loan.id) == []

    def test_missing_receiver_account(self, scenario):
        scenario.add_account(scenario.lender, AccountType.CASHAPP, "$lena")
        loan = scenario.request_loan()

        with pytest.raises(AccountMissingError) as exc_info:
            scenario.engine.initiate_payment(loan.id, "50", "STRIPE", "LENDER", "BORROWER")
        assert exc_info.value.to_dict()["requiresAccount"] == "borrower"

    def test_unverified_accounts_rejected_when_configured(self):
        scenario = Scenario(make_system(require_verified_accounts=True))
        scenario.add_account(scenario.lender, AccountType.CASHAPP, "$lena", verified=False)
        scenario.add_account(scenario.borrower, AccountType.CASHAPP, "$bo", verified=False)
        loan = scenario.request_loan()

        with pytest.raises(AccountMissingError):
            scenario.engine.initiate_payment(loan.id, "50", "CASHAPP", "LENDER", "BORROWER")

    def test_unverified_accounts_allowed_by_default(self, scenario):
        scenario.add_account(scenario.lender, AccountType.CASHAPP, "$lena", verified=False)
        scenario.add_account(scenario.borrower, AccountType.CASHAPP, "$bo", verified=False)
        loan = scenario.request_loan()

        result = scenario.engine.initiate_payment(loan.id, "50", "CASHAPP", "LENDER", "BORROWER")
        assert result.requires_manual_confirmation


class TestStripeSettlement:
    """Test the two-phase card flow"""

    def _initiate(self, scenario):
        scenario.add_cashapp_accounts()
        loan = scenario.request_loan()
        result = scenario.engine.initiate_payment(loan.id, "50", "STRIPE", "LENDER", "BORROWER")
        return loan, result

    def test_initiate_returns_client_secret(self, scenario):
        loan, result = self._initiate(scenario)

        assert result.requires_action
        assert result.client_secret.endswith("_secret_mock")
        assert result.payment.provider_reference.startswith("pi_mock_")
        assert result.payment.from_account_id == scenario.lender_cashapp.id
        assert result.payment.to_account_id == scenario.borrower_cashapp.id
        assert not result.payment.confirmed
        assert scenario.loan(loan.id).status == LoanStatus.PENDING

    def test_confirm_funds_loan_and_requests_cashapp_transfer(self, scenario):
        loan, result = self._initiate(scenario)
        confirmed = scenario.engine.confirm_stripe_payment(
            result.payment.provider_reference, result.payment.id, user_id=scenario.lender.id
        )

        assert confirmed.payment.is_settled
        assert confirmed.loan.status == LoanStatus.FUNDED

        transfer = notifications_of(scenario, scenario.lender, NotificationType.TRANSFER_REQUIRED)
        assert [n.message for n in transfer] == [
            "Please manually send $50.00 via CashApp to $bo (borrower) to complete the loan funding."
        ]

    def test_reconfirm_is_idempotent(self, scenario):
        loan, result = self._initiate(scenario)
        intent_id = result.payment.provider_reference
        scenario.engine.confirm_stripe_payment(intent_id, result.payment.id)

        again = scenario.engine.confirm_stripe_payment(intent_id, result.payment.id)

        assert again.message == "Payment already confirmed"
        assert again.loan.status == LoanStatus.FUNDED
        assert len(notifications_of(scenario, scenario.lender, NotificationType.TRANSFER_REQUIRED)) == 1
        assert scenario.audit_count(AuditEventType.LOAN_FUNDED, loan.id) == 1

    def test_unsucceeded_intent_fails_payment(self):
        scenario = Scenario(make_system(rails=make_rails(stripe=MockStripeRail(intent_status="requires_payment_method"))))
        loan, result = self._initiate(scenario)

        with pytest.raises(ExternalRailError) as exc_info:
            scenario.engine.confirm_stripe_payment(result.payment.provider_reference, result.payment.id)

        assert exc_info.value.message == "Payment status: requires_payment_method"
        payment = scenario.system.payment_ledger.require_payment(result.payment.id)
        assert payment.transfer_status == TransferStatus.FAILED
        assert not payment.confirmed
        assert scenario.loan(loan.id).status == LoanStatus.PENDING
        assert scenario.audit_count(AuditEventType.PAYMENT_FAILED) == 1

    def test_initiate_failure_marks_payment_failed(self):
        scenario = Scenario(make_system(rails=make_rails(stripe=MockStripeRail(initiate_error="Your card was declined"))))
        scenario.add_cashapp_accounts()
        loan = scenario.request_loan()

        with pytest.raises(ExternalRailError) as exc_info:
            scenario.engine.initiate_payment(loan.id, "50", "STRIPE", "LENDER", "BORROWER")

        payment_id = exc_info.value.to_dict()["paymentId"]
        payment = scenario.system.payment_ledger.require_payment(payment_id)
        assert payment.transfer_status == TransferStatus.FAILED
        assert payment.failure_reason == "Your card was declined"
        assert scenario.loan(loan.id).status == LoanStatus.PENDING

    def test_confirm_requires_ids(self, scenario):
        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.confirm_stripe_payment("", "payment")
        assert exc_info.value.message == "Missing required fields"

    def test_confirm_wrong_method(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        payment = scenario.system.payment_ledger.list_for_loan(loan.id)[0]

        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.confirm_stripe_payment("pi_x", payment.id)
        assert exc_info.value.message == "Payment is not a STRIPE payment"

    def test_intent_of_another_payment_is_rejected(self, scenario):
        scenario.add_cashapp_accounts()
        loan = scenario.fund(scenario.request_loan())
        small = scenario.repay(loan, "1", method="STRIPE").payment
        large = scenario.repay(loan, "55", method="STRIPE").payment
        scenario.engine.confirm_stripe_payment(small.provider_reference, small.id)

        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.confirm_stripe_payment(small.provider_reference, large.id)

        assert exc_info.value.message == "Provider reference does not match this payment"
        stored = scenario.system.payment_ledger.require_payment(large.id)
        assert not stored.confirmed
        assert stored.provider_reference == large.provider_reference
        assert stored.transfer_status == TransferStatus.PENDING
        assert scenario.loan(loan.id).status == LoanStatus.FUNDED

    def test_intent_amount_must_match_payment(self, scenario):
        loan, result = self._initiate(scenario)
        rail = scenario.system.rails[PaymentMethod.STRIPE]
        rail.intents[result.payment.provider_reference]["amount"] = 100

        with pytest.raises(ExternalRailError) as exc_info:
            scenario.engine.confirm_stripe_payment(result.payment.provider_reference, result.payment.id)

        assert exc_info.value.message == "Payment intent amount does not match the payment"
        assert not scenario.system.payment_ledger.require_payment(result.payment.id).confirmed
        assert scenario.loan(loan.id).status == LoanStatus.PENDING

    def test_payment_without_reference_cannot_be_confirmed(self):
        scenario = Scenario(make_system(rails=make_rails(stripe=MockStripeRail(initiate_error="Your card was declined"))))
        scenario.add_cashapp_accounts()
        loan = scenario.request_loan()
        with pytest.raises(ExternalRailError) as exc_info:
            scenario.engine.initiate_payment(loan.id, "50", "STRIPE", "LENDER", "BORROWER")

        with pytest.raises(ValidationError) as exc_info_confirm:
            scenario.engine.confirm_stripe_payment("pi_other", exc_info.value.to_dict()["paymentId"])

        assert exc_info_confirm.value.message == "Payment has no provider reference to confirm"
        assert scenario.loan(loan.id).status == LoanStatus.PENDING

    def test_confirm_cashapp_transfer_notifies_receiver(self, scenario):
        loan, result = self._initiate(scenario)
        scenario.engine.confirm_stripe_payment(result.payment.provider_reference, result.payment.id)

        confirmed = scenario.engine.confirm_cashapp_transfer(result.payment.id, "cash_123", "Sent!")

        assert confirmed.payment.external_transaction_id == "cash_123"
        assert confirmed.message == "CashApp transfer confirmed"
        messages = [n.message for n in notifications_of(scenario, scenario.borrower, NotificationType.PAYMENT_CONFIRMED)]
        assert messages == ["CashApp transfer of $50.00 has been confirmed. Sent!"]

    def test_confirm_cashapp_transfer_requires_completed_payment(self, scenario):
        loan, result = self._initiate(scenario)

        with pytest.raises(ValidationError):
            scenario.engine.confirm_cashapp_transfer(result.payment.id, "cash_123")


class TestPayPalSettlement:
    """Test execute-and-payout"""

    def _system(self, **rail_options):
        scenario = Scenario(make_system(rails=make_rails(paypal=MockPayPalRail(**rail_options))))
        scenario.add_paypal_accounts()
        return scenario

    def test_funding_pays_out_to_borrower(self):
        scenario = self._system()
        loan = scenario.request_loan()
        result = scenario.engine.initiate_payment(loan.id, "50", "PAYPAL", "LENDER", "BORROWER")

        assert result.requires_action
        assert "sandbox.paypal.com" in result.approval_url

        confirmed = scenario.engine.confirm_paypal_payment(
            result.payment.provider_reference, "PAYER123", result.payment.id
        )

        assert confirmed.loan.status == LoanStatus.FUNDED
        assert confirmed.payment.is_settled
        assert confirmed.payment.external_transaction_id.startswith("BATCH-MOCK-")
        rail = scenario.system.rails[PaymentMethod.PAYPAL]
        assert [p["receiver"] for p in rail.payouts] == ["bo@paypal.test"]

    def test_unapproved_payment_fails(self):
        scenario = self._system(approve=False)
        loan = scenario.request_loan()
        result = scenario.engine.initiate_payment(loan.id, "50", "PAYPAL", "LENDER", "BORROWER")

        with pytest.raises(ExternalRailError) as exc_info:
            scenario.engine.confirm_paypal_payment(result.payment.provider_reference, "PAYER123", result.payment.id)

        assert exc_info.value.message == "PayPal payment state: failed"
        assert scenario.loan(loan.id).status == LoanStatus.PENDING

    def test_funding_payout_failure(self):
        scenario = self._system(payout_succeeds=False)
        loan = scenario.request_loan()
        result = scenario.engine.initiate_payment(loan.id, "50", "PAYPAL", "LENDER", "BORROWER")

        with pytest.raises(ExternalRailError) as exc_info:
            scenario.engine.confirm_paypal_payment(result.payment.provider_reference, "PAYER123", result.payment.id)

        assert exc_info.value.message == "Receiver is unregistered"
        payment = scenario.system.payment_ledger.require_payment(result.payment.id)
        assert payment.transfer_status == TransferStatus.FAILED
        assert not payment.confirmed
        assert scenario.loan(loan.id).status == LoanStatus.PENDING
        assert anomaly_kinds(scenario, loan.id) == ["payout_failed_after_collection"]

    def test_repayment_payout_failure_still_settles(self):
        scenario = self._system(payout_succeeds=False)
        loan = scenario.fund(scenario.request_loan())
        result = scenario.repay(loan, "55", method="PAYPAL")

        confirmed = scenario.engine.confirm_paypal_payment(result.payment.provider_reference, "PAYER123", result.payment.id)

        assert confirmed.payment.is_settled
        assert confirmed.loan.status == LoanStatus.COMPLETED
        assert [a.kind for a in confirmed.anomalies] == ["repayment_payout_failed"]

    def test_missing_fields(self):
        scenario = self._system()
        with pytest.raises(ValidationError):
            scenario.engine.confirm_paypal_payment("PAYID-X", "", "payment")

    def test_paypal_payment_of_another_payment_is_rejected(self):
        scenario = self._system()
        loan = scenario.fund(scenario.request_loan())
        small = scenario.repay(loan, "1", method="PAYPAL").payment
        large = scenario.repay(loan, "55", method="PAYPAL").payment

        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.confirm_paypal_payment(small.provider_reference, "PAYER123", large.id)

        assert exc_info.value.message == "Provider reference does not match this payment"
        stored = scenario.system.payment_ledger.require_payment(large.id)
        assert not stored.confirmed
        assert stored.provider_reference == large.provider_reference
        assert scenario.loan(loan.id).status == LoanStatus.FUNDED
        assert scenario.system.rails[PaymentMethod.PAYPAL].payouts == []


class TestManualFunding:
    """Test CashApp funding and the funded-at-initiation policy"""

    def test_manual_funding_funds_at_initiation(self, scenario):
        scenario.add_cashapp_accounts()
        loan = scenario.request_loan()

        result = scenario.engine.initiate_payment(loan.id, "50", "CASHAPP", "LENDER", "BORROWER")

        assert result.requires_manual_confirmation
        assert result.message == "Please proceed with manual CASHAPP transfer and provide confirmation"
        assert result.payment.manual_confirmation_status == ManualConfirmationStatus.PENDING_UPLOAD
        assert not result.payment.confirmed
        assert result.loan.status == LoanStatus.FUNDED
        assert scenario.audit_count(AuditEventType.LOAN_FUNDED, loan.id) == 1

    def test_funding_waits_for_confirmation_when_disabled(self):
        scenario = Scenario(make_system(manual_funding_at_initiation=False))
        scenario.add_cashapp_accounts()
        loan = scenario.request_loan()

        result = scenario.engine.initiate_payment(loan.id, "50", "CASHAPP", "LENDER", "BORROWER")
        assert result.loan.status == LoanStatus.PENDING

        confirmed = scenario.engine.confirm_manual_payment(result.payment.id, True, "BORROWER")

        assert confirmed.payment.manual_confirmation_status == ManualConfirmationStatus.CONFIRMED
        assert confirmed.loan.status == LoanStatus.FUNDED
        assert scenario.system.payment_ledger.has_confirmed_funding(loan.id)

    def test_zelle_needs_no_registered_accounts(self, scenario):
        loan = scenario.request_loan()
        result = scenario.engine.initiate_payment(loan.id, "50", "ZELLE", "LENDER", "BORROWER")

        assert result.payment.method == PaymentMethod.ZELLE
        assert result.payment.from_account_id is None


class TestManualAttestation:
    """Test proof submission and dual-party confirmation on repayments"""

    def _repayment(self, scenario, amount="30"):
        scenario.add_cashapp_accounts()
        loan = scenario.fund(scenario.request_loan())
        result = scenario.repay(loan, amount, method="CASHAPP")
        return loan, result.payment

    def test_submit_proof(self, scenario):
        loan, payment = self._repayment(scenario)

        result = scenario.engine.submit_manual_proof(
            payment.id, "BORROWER", transaction_id="T-1", note="sent via cashapp",
            screenshot_path="uploads/proof.png", user_id=scenario.borrower.id
        )

        assert result.message == "Payment proof submitted successfully"
        assert result.payment.manual_confirmation_status == ManualConfirmationStatus.PENDING_CONFIRMATION
        assert result.payment.external_transaction_id == "T-1"
        assert result.payment.confirmation_screenshot == "uploads/proof.png"
        messages = [n.message for n in notifications_of(scenario, scenario.lender, NotificationType.PAYMENT_PROOF_SUBMITTED)]
        assert messages == ["Payment proof submitted for CASHAPP payment of $30.00. Please review and confirm."]

    def test_resubmitting_proof_keeps_unspecified_fields(self, scenario):
        loan, payment = self._repayment(scenario)
        scenario.engine.submit_manual_proof(payment.id, "BORROWER", transaction_id="T-1")

        result = scenario.engine.submit_manual_proof(payment.id, "BORROWER", note="second look")

        assert result.payment.external_transaction_id == "T-1"
        assert result.payment.confirmation_note == "second look"

    def test_proof_only_for_manual_payments(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        payment = scenario.system.payment_ledger.list_for_loan(loan.id)[0]

        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.submit_manual_proof(payment.id, "LENDER", transaction_id="T-1")
        assert exc_info.value.message == "Proof can only be submitted for manual payments"

    def test_proof_rejected_after_confirmation(self, scenario):
        loan, payment = self._repayment(scenario)
        scenario.engine.confirm_manual_payment(payment.id, True, "LENDER")

        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.submit_manual_proof(payment.id, "BORROWER", transaction_id="T-2")
        assert exc_info.value.message == "Payment is already confirmed"

    def test_proof_by_wrong_party(self, scenario):
        loan, payment = self._repayment(scenario)
        with pytest.raises(AuthorizationError):
            scenario.engine.submit_manual_proof(payment.id, "BORROWER", user_id=scenario.lender.id)

    def test_payer_confirmation_waits_for_receiver(self, scenario):
        loan, payment = self._repayment(scenario)

        result = scenario.engine.confirm_manual_payment(payment.id, True, "BORROWER")

        assert result.payment.manual_confirmation_status == ManualConfirmationStatus.PENDING_CONFIRMATION
        assert result.payment.borrower_confirmed
        assert not result.payment.confirmed
        waiting = notifications_of(scenario, scenario.lender, NotificationType.PAYMENT_AWAITING_CONFIRMATION)
        assert [n.message for n in waiting] == [
            "Payment of $30.00 has been confirmed by BORROWER. Waiting for your confirmation."
        ]

    def test_both_parties_confirm(self, scenario):
        loan, payment = self._repayment(scenario)
        scenario.engine.confirm_manual_payment(payment.id, True, "BORROWER", note="paid")

        result = scenario.engine.confirm_manual_payment(payment.id, True, "LENDER", note="got it")

        assert result.payment.manual_confirmation_status == ManualConfirmationStatus.CONFIRMED
        assert result.payment.confirmed
        assert result.payment.transfer_status == TransferStatus.COMPLETED
        assert result.payment.confirmation_note == "BORROWER: paid\nLENDER: got it"
        for user in (scenario.lender, scenario.borrower):
            confirmed = notifications_of(scenario, user, NotificationType.PAYMENT_CONFIRMED)
            assert [n.message for n in confirmed] == ["Payment of $30.00 has been confirmed by both parties."]

    def test_receiver_confirmation_fast_path(self, scenario):
        loan, payment = self._repayment(scenario)

        result = scenario.engine.confirm_manual_payment(payment.id, True, "LENDER", user_id=scenario.lender.id)

        assert result.payment.manual_confirmation_status == ManualConfirmationStatus.CONFIRMED
        assert result.payment.lender_confirmed
        assert not result.payment.borrower_confirmed
        assert result.message == "Payment confirmation recorded"

    def test_repeat_confirmation_notifies_once(self, scenario):
        loan, payment = self._repayment(scenario)
        scenario.engine.confirm_manual_payment(payment.id, True, "LENDER")
        scenario.engine.confirm_manual_payment(payment.id, True, "LENDER")

        assert len(notifications_of(scenario, scenario.borrower, NotificationType.PAYMENT_CONFIRMED)) == 1
        assert scenario.audit_count(AuditEventType.PAYMENT_SETTLED) == 2

    def test_dispute_overrides_other_confirmation(self, scenario):
        loan, payment = self._repayment(scenario)
        scenario.engine.confirm_manual_payment(payment.id, True, "BORROWER")

        result = scenario.engine.confirm_manual_payment(payment.id, False, "LENDER", note="nothing arrived")

        assert result.payment.manual_confirmation_status == ManualConfirmationStatus.DISPUTED
        assert not result.payment.confirmed
        assert result.message == "Payment disputed"
        disputed = notifications_of(scenario, scenario.borrower, NotificationType.PAYMENT_DISPUTED)
        assert [n.message for n in disputed] == ["Payment of $30.00 has been disputed. Please review."]
        assert scenario.audit_count(AuditEventType.PAYMENT_DISPUTED) == 1

    def test_partial_then_covering_repayment(self, scenario):
        loan, first = self._repayment(scenario, "30")
        result = scenario.engine.confirm_manual_payment(first.id, True, "LENDER")
        assert result.loan.status == LoanStatus.FUNDED

        second = scenario.repay(loan, "25", method="CASHAPP").payment
        result = scenario.engine.confirm_manual_payment(second.id, True, "LENDER")

        assert result.loan.status == LoanStatus.COMPLETED
        assert scenario.system.payment_ledger.total_repaid(loan.id) == Decimal("55")
        assert scenario.audit_count(AuditEventType.LOAN_COMPLETED, loan.id) == 1

    def test_dispute_after_completion_reports_anomalies(self, scenario):
        loan, payment = self._repayment(scenario, "55")
        scenario.engine.confirm_manual_payment(payment.id, True, "LENDER")
        assert scenario.loan(loan.id).status == LoanStatus.COMPLETED

        result = scenario.engine.confirm_manual_payment(payment.id, False, "BORROWER")

        kinds = [a.kind for a in result.anomalies]
        assert "completed_underpaid" in kinds
        assert "completed_with_disputes" in kinds
        assert scenario.loan(loan.id).status == LoanStatus.COMPLETED

    def test_invalid_role(self, scenario):
        loan, payment = self._repayment(scenario)
        with pytest.raises(ValidationError) as exc_info:
            scenario.engine.confirm_manual_payment(payment.id, True, "BANKER")
        assert exc_info.value.message == "Invalid user role: BANKER"


class TestPaymentReads:
    def test_payment_details(self, scenario):
        scenario.add_cashapp_accounts()
        loan = scenario.request_loan()
        result = scenario.engine.initiate_payment(loan.id, "50", "CASHAPP", "LENDER", "BORROWER")

        details = scenario.engine.get_payment_details(result.payment.id, user_id=scenario.borrower.id)

        assert details["loan"].id == loan.id
        assert details["from_account"].identifier == "$lena"
        assert details["to_account"].identifier == "$bo"

    def test_outsider_cannot_read(self, scenario):
        outsider = scenario.system.user_manager.create_user("Eve", "eve@example.com", UserRole.BORROWER)
        loan = scenario.fund(scenario.request_loan())

        with pytest.raises(AuthorizationError):
            scenario.engine.list_loan_payments(loan.id, user_id=outsider.id)

    def test_list_loan_payments(self, scenario):
        loan = scenario.fund(scenario.request_loan())
        repayment = scenario.repay(loan, "20").payment

        payments = scenario.engine.list_loan_payments(loan.id, user_id=scenario.lender.id)
        assert repayment.id in [p.id for p in payments]
        assert len(payments) == 2
