"""
Settlement Engine Module

Decides what Payment and Loan state must become for every payment event:
initiation, two-phase provider confirmation, manual proof submission and
dual-party attestation.

Three kinds of rails feed events in:

- instant (internal wallet): settles inside initiate_payment()
- two-phase provider (Stripe, PayPal): settles in confirm_*_payment()
- manual attested (CashApp, Zelle): settles when both parties attest,
  or when the receiving side confirms on its own

Every Payment write after creation is version-guarded. Once a payment
settles, its loan is handed to LoanLifecycle; a failure there is recorded as
a reconciliation anomaly and never rolls back the settled payment.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from .audit import AuditTrail, AuditEventType
from .loans import Loan, LoanManager, LoanStatus
from .payments import (
    Payment, PaymentLedger, PaymentMethod, PartyRole, TransferStatus,
    ManualConfirmationStatus, parse_amount, format_amount
)
from .accounts import AccountType, PaymentAccount, PaymentAccountManager
from .lifecycle import LifecycleOutcome, LoanLifecycle
from .notifications import NotificationCenter, NotificationType
from .rails import PaymentContext, PaymentRail, PayPalRail, RailResult
from .errors import (
    AccountMissingError, AuthorizationError, ConflictError, ExternalRailError,
    ReconciliationAnomaly, ValidationError
)
from .logging_config import get_logger, log_action


# Rails whose parties must hold a registered account, and the account type used
ACCOUNT_TYPE_FOR_METHOD = {
    PaymentMethod.CASHAPP: AccountType.CASHAPP,
    PaymentMethod.STRIPE: AccountType.CASHAPP,
    PaymentMethod.PAYPAL: AccountType.PAYPAL,
}

ACCOUNT_TYPE_NAMES = {
    AccountType.CASHAPP: "CashApp",
    AccountType.PAYPAL: "PayPal",
    AccountType.ZELLE: "Zelle",
}


def _coerce(enum_type: Type[Enum], value: Any, label: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).upper())
    except ValueError:
        raise ValidationError(f"Invalid {label}: {value}")


@dataclass
class SettlementResult:
    """Outcome of a settlement operation"""
    payment: Payment
    loan: Optional[Loan] = None
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    requires_action: bool = False
    requires_manual_confirmation: bool = False
    message: Optional[str] = None
    anomalies: List[ReconciliationAnomaly] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": True, "payment": self.payment.to_dict()}
        if self.loan is not None:
            result["loanStatus"] = self.loan.status.value
        if self.client_secret:
            result["clientSecret"] = self.client_secret
        if self.approval_url:
            result["approvalUrl"] = self.approval_url
        if self.requires_action:
            result["requiresAction"] = True
        if self.requires_manual_confirmation:
            result["requiresManualConfirmation"] = True
        if self.message:
            result["message"] = self.message
        return result


class SettlementEngine:
    """
    Applies payment events to Payment and Loan state
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        payment_ledger: PaymentLedger,
        account_manager: PaymentAccountManager,
        lifecycle: LoanLifecycle,
        notification_center: NotificationCenter,
        audit_trail: AuditTrail,
        rails: Dict[PaymentMethod, PaymentRail],
        manual_funding_at_initiation: bool = True,
        require_verified_accounts: bool = False,
        paypal_auto_payout_repayments: bool = True,
        manual_confirmation_retries: int = 3
    ):
        self.loan_manager = loan_manager
        self.payment_ledger = payment_ledger
        self.account_manager = account_manager
        self.lifecycle = lifecycle
        self.notification_center = notification_center
        self.audit_trail = audit_trail
        self.rails = rails
        self.manual_funding_at_initiation = manual_funding_at_initiation
        self.require_verified_accounts = require_verified_accounts
        self.paypal_auto_payout_repayments = paypal_auto_payout_repayments
        self.manual_confirmation_retries = max(1, manual_confirmation_retries)
        self.logger = get_logger("microlend.settlement")

    # Initiation

    def initiate_payment(
        self,
        loan_id: str,
        amount: Any,
        method: Any,
        payer_role: Any,
        receiver_role: Any,
        user_id: Optional[str] = None
    ) -> SettlementResult:
        """
        Create a payment on a loan and start it on its rail

        Args:
            loan_id: Loan being funded or repaid
            amount: Positive amount
            method: PaymentMethod (or its name)
            payer_role: LENDER for funding, BORROWER for repayment
            receiver_role: The opposite role
            user_id: Caller; when given it must be the payer on this loan

        Returns:
            SettlementResult; two-phase rails carry a client secret or approval URL

        Raises:
            ValidationError, AccountMissingError, NotFoundError, ExternalRailError
        """
        amount = parse_amount(amount)
        method = _coerce(PaymentMethod, method, "payment method")
        payer_role = _coerce(PartyRole, payer_role, "payer role")
        receiver_role = _coerce(PartyRole, receiver_role, "receiver role")
        if payer_role == receiver_role:
            raise ValidationError("Payer and receiver must be opposite sides of the loan")

        loan = self.loan_manager.require_loan(loan_id)
        self._check_party(loan, payer_role, user_id)

        if loan.status == LoanStatus.DENIED:
            raise ValidationError("Cannot make payments on a denied loan")
        if payer_role == PartyRole.BORROWER and loan.status == LoanStatus.COMPLETED:
            raise ValidationError("Loan is already fully repaid")

        rail = self.rails.get(method)
        if rail is None:
            raise ValidationError(f"Payment method {method.value} is not available")

        from_account, to_account = self._resolve_accounts(loan, method, payer_role, receiver_role)

        payment = self.payment_ledger.create_payment(
            loan_id=loan.id,
            amount=amount,
            method=method,
            payer_role=payer_role,
            receiver_role=receiver_role,
            manual_confirmation_status=(
                ManualConfirmationStatus.PENDING_UPLOAD if rail.manual else ManualConfirmationStatus.NONE
            ),
            from_account_id=from_account.id if from_account else None,
            to_account_id=to_account.id if to_account else None
        )

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_CREATED,
            entity_type="payment",
            entity_id=payment.id,
            user_id=user_id,
            metadata={
                "loan_id": loan.id,
                "amount": amount,
                "method": method.value,
                "payer_role": payer_role.value,
                "receiver_role": receiver_role.value
            }
        )

        if rail.manual:
            return self._initiate_manual(loan, payment, user_id)

        context = PaymentContext(
            payment_id=payment.id,
            loan_id=loan.id,
            amount=amount,
            method=method,
            payer_role=payer_role,
            receiver_role=receiver_role,
            from_identifier=from_account.identifier if from_account else None,
            to_identifier=to_account.identifier if to_account else None
        )
        rail_result = rail.initiate(context)
        if not rail_result.success:
            self._fail(payment, rail_result, rail)

        if rail.instant:
            payment = self.payment_ledger.update(
                payment,
                confirmed=True,
                transfer_status=TransferStatus.COMPLETED,
                external_transaction_id=rail_result.transaction_id
            )
            self._audit_settled(payment, user_id)
            outcome = self._apply_lifecycle(payment)
            return SettlementResult(payment=payment, loan=outcome.loan,
                                    message="Payment completed", anomalies=outcome.anomalies)

        payment = self.payment_ledger.update(payment, provider_reference=rail_result.provider_reference)
        return SettlementResult(
            payment=payment,
            loan=loan,
            client_secret=rail_result.client_secret,
            approval_url=rail_result.approval_url,
            requires_action=True
        )

    def _initiate_manual(self, loan: Loan, payment: Payment, user_id: Optional[str]) -> SettlementResult:
        anomalies = []
        if payment.is_funding and self.manual_funding_at_initiation:
            try:
                outcome = self.lifecycle.mark_funded_on_initiation(loan.id, payment.id, user_id=user_id)
                loan = outcome.loan
            except Exception as e:
                anomalies.append(self._lifecycle_failure(payment, e))

        return SettlementResult(
            payment=payment,
            loan=loan,
            requires_manual_confirmation=True,
            message=f"Please proceed with manual {payment.method.value} transfer and provide confirmation",
            anomalies=anomalies
        )

    def _resolve_accounts(
        self,
        loan: Loan,
        method: PaymentMethod,
        payer_role: PartyRole,
        receiver_role: PartyRole
    ) -> Tuple[Optional[PaymentAccount], Optional[PaymentAccount]]:
        account_type = ACCOUNT_TYPE_FOR_METHOD.get(method)
        if account_type is None:
            return None, None

        accounts = []
        for role in (payer_role, receiver_role):
            account = self.account_manager.get_default_account(
                loan.party_for_role(role.value),
                account_type,
                verified_only=self.require_verified_accounts
            )
            if account is None:
                raise AccountMissingError(role.value.lower(), ACCOUNT_TYPE_NAMES[account_type])
            accounts.append(account)
        return accounts[0], accounts[1]

    # Two-phase confirmation

    def confirm_stripe_payment(self, payment_intent_id: str, payment_id: str,
                               user_id: Optional[str] = None) -> SettlementResult:
        """
        Confirm a card payment after the client finished the intent

        Only an intent status of "succeeded" settles the payment. The payer is
        then asked to complete the CashApp transfer to the receiver.
        """
        if not payment_intent_id or not payment_id:
            raise ValidationError("Missing required fields")

        payment = self.payment_ledger.require_payment(payment_id)
        self._require_method(payment, PaymentMethod.STRIPE)
        self._require_reference(payment, payment_intent_id)
        loan = self.loan_manager.require_loan(payment.loan_id)
        self._check_party(loan, None, user_id)

        if payment.confirmed:
            return self._already_settled(payment)

        rail = self._rail(PaymentMethod.STRIPE)
        rail_result = rail.confirm(payment_intent_id, payment_id=payment.id, amount=payment.amount)
        if not rail_result.success:
            self._fail(payment, rail_result, rail)

        try:
            payment = self.payment_ledger.update(
                payment, confirmed=True, transfer_status=TransferStatus.PROCESSING
            )
        except ConflictError:
            return self._settled_by_concurrent_writer(payment.id)
        payment = self.payment_ledger.update(payment, transfer_status=TransferStatus.COMPLETED)
        self._audit_settled(payment, user_id)

        self._notify_transfer_required(loan, payment)
        outcome = self._apply_lifecycle(payment)
        return SettlementResult(payment=payment, loan=outcome.loan, message="Payment confirmed",
                                anomalies=outcome.anomalies)

    def confirm_paypal_payment(self, paypal_payment_id: str, payer_id: str, payment_id: str,
                               user_id: Optional[str] = None) -> SettlementResult:
        """
        Execute an approved PayPal payment and disburse it to the receiver

        A funding payment collected from the lender is paid out to the
        borrower; if that payout fails the payment is marked FAILED and an
        anomaly is recorded, since the funds were collected but not delivered.
        """
        if not paypal_payment_id or not payer_id or not payment_id:
            raise ValidationError("Missing required fields")

        payment = self.payment_ledger.require_payment(payment_id)
        self._require_method(payment, PaymentMethod.PAYPAL)
        self._require_reference(payment, paypal_payment_id)
        loan = self.loan_manager.require_loan(payment.loan_id)
        self._check_party(loan, None, user_id)

        if payment.confirmed:
            return self._already_settled(payment)

        rail = self._rail(PaymentMethod.PAYPAL)
        rail_result = rail.confirm(paypal_payment_id, payer_id=payer_id)
        if not rail_result.success:
            self._fail(payment, rail_result, rail)

        try:
            payment = self.payment_ledger.update(
                payment, confirmed=True, transfer_status=TransferStatus.PROCESSING
            )
        except ConflictError:
            return self._settled_by_concurrent_writer(payment.id)

        anomalies = []
        receiver_account = (
            self.account_manager.get_account(payment.to_account_id) if payment.to_account_id else None
        )

        if payment.is_funding and receiver_account:
            payout = self._payout(rail, payment, receiver_account, loan)
            if not payout.success:
                error = payout.error or "PayPal payout failed"
                payment = self.payment_ledger.update(
                    payment, confirmed=False, transfer_status=TransferStatus.FAILED, failure_reason=error
                )
                self.lifecycle.report_anomaly(
                    loan.id, "payout_failed_after_collection",
                    "Funds were collected from the payer but the payout to the receiver failed",
                    {"payment_id": payment.id, "paypal_payment_id": paypal_payment_id, "error": error}
                )
                self._audit_failed(payment, error, rail.name)
                raise ExternalRailError(error, rail=rail.name, payment_id=payment.id)

            payment = self.payment_ledger.update(
                payment, transfer_status=TransferStatus.COMPLETED,
                external_transaction_id=payout.transaction_id
            )
        else:
            payment = self.payment_ledger.update(payment, transfer_status=TransferStatus.COMPLETED)
            if payment.is_repayment and receiver_account and self.paypal_auto_payout_repayments:
                payout = self._payout(rail, payment, receiver_account, loan)
                if payout.success:
                    payment = self.payment_ledger.update(payment, external_transaction_id=payout.transaction_id)
                else:
                    anomalies.append(self.lifecycle.report_anomaly(
                        loan.id, "repayment_payout_failed",
                        "Repayment was collected but the payout to the lender failed",
                        {"payment_id": payment.id, "error": payout.error}
                    ))

        self._audit_settled(payment, user_id)
        outcome = self._apply_lifecycle(payment)
        return SettlementResult(payment=payment, loan=outcome.loan, message="Payment confirmed",
                                anomalies=anomalies + outcome.anomalies)

    def confirm_cashapp_transfer(
        self,
        payment_id: str,
        cashapp_transaction_id: Optional[str] = None,
        note: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> SettlementResult:
        """Record the CashApp leg of a settled card payment and notify the receiver"""
        payment = self.payment_ledger.require_payment(payment_id)
        loan = self.loan_manager.require_loan(payment.loan_id)
        self._check_party(loan, None, user_id)

        if payment.transfer_status != TransferStatus.COMPLETED:
            raise ValidationError("Payment must be completed before confirming the CashApp transfer")

        changes = {}
        if cashapp_transaction_id:
            changes["external_transaction_id"] = cashapp_transaction_id
        if note:
            changes["confirmation_note"] = note
        if changes:
            payment = self.payment_ledger.update(payment, **changes)

        self.notification_center.create(
            loan.party_for_role(payment.receiver_role.value),
            loan.id,
            NotificationType.PAYMENT_CONFIRMED,
            f"CashApp transfer of {format_amount(payment.amount)} has been confirmed. {note or ''}".strip()
        )

        outcome = self._apply_lifecycle(payment)
        return SettlementResult(payment=payment, loan=outcome.loan,
                                message="CashApp transfer confirmed", anomalies=outcome.anomalies)

    # Manual attestation

    def submit_manual_proof(
        self,
        payment_id: str,
        submitter_role: Any,
        transaction_id: Optional[str] = None,
        note: Optional[str] = None,
        screenshot_path: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> SettlementResult:
        """
        Attach transfer proof to a manual payment and ask the other party to confirm

        Only the proof fields that are provided are overwritten.
        """
        role = _coerce(PartyRole, submitter_role, "user role")

        def prepare(payment: Payment) -> Dict[str, Any]:
            if not payment.is_manual:
                raise ValidationError("Proof can only be submitted for manual payments")
            if payment.manual_confirmation_status == ManualConfirmationStatus.CONFIRMED:
                raise ValidationError("Payment is already confirmed")

            changes: Dict[str, Any] = {
                "manual_confirmation_status": ManualConfirmationStatus.PENDING_CONFIRMATION
            }
            if transaction_id is not None:
                changes["external_transaction_id"] = transaction_id
            if note is not None:
                changes["confirmation_note"] = note
            if screenshot_path is not None:
                changes["confirmation_screenshot"] = screenshot_path
            return changes

        loan = self._loan_for_payment(payment_id, role, user_id)
        _, payment = self._update_with_retry(payment_id, prepare)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_PROOF_SUBMITTED,
            entity_type="payment",
            entity_id=payment.id,
            user_id=user_id,
            metadata={
                "submitter_role": role.value,
                "transaction_id": transaction_id,
                "has_screenshot": screenshot_path is not None
            }
        )
        self.notification_center.create(
            loan.party_for_role(role.counterparty.value),
            loan.id,
            NotificationType.PAYMENT_PROOF_SUBMITTED,
            f"Payment proof submitted for {payment.method.value} payment of "
            f"{format_amount(payment.amount)}. Please review and confirm."
        )
        return SettlementResult(payment=payment, loan=loan, message="Payment proof submitted successfully")

    def confirm_manual_payment(
        self,
        payment_id: str,
        confirmed: bool,
        confirmer_role: Any,
        note: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> SettlementResult:
        """
        Record one party's attestation of a manual payment

        Decision order: a dispute always wins; otherwise the payment is
        confirmed when the other party already confirmed, or when the
        confirmer is the receiving side (lender on a repayment, borrower on a
        funding); otherwise it waits for the other party.

        Args:
            payment_id: Manual payment being attested
            confirmed: False disputes the payment
            confirmer_role: LENDER or BORROWER
            note: Appended to the payment's notes as "ROLE: note"
            user_id: Caller; when given it must hold confirmer_role on the loan

        Returns:
            SettlementResult with the updated payment and loan
        """
        role = _coerce(PartyRole, confirmer_role, "user role")
        confirmed = bool(confirmed)

        def prepare(payment: Payment) -> Dict[str, Any]:
            if not payment.is_manual:
                raise ValidationError("Only manual payments can be confirmed by the parties")

            changes: Dict[str, Any] = {}
            if role == PartyRole.LENDER:
                changes["lender_confirmed"] = confirmed
                other_confirmed = payment.borrower_confirmed
            else:
                changes["borrower_confirmed"] = confirmed
                other_confirmed = payment.lender_confirmed

            if note:
                changes["confirmation_note"] = f"{payment.confirmation_note or ''}\n{role.value}: {note}".strip()

            receiver_confirming = (
                (role == PartyRole.LENDER and payment.is_repayment)
                or (role == PartyRole.BORROWER and payment.is_funding)
            )

            if not confirmed:
                changes["manual_confirmation_status"] = ManualConfirmationStatus.DISPUTED
                changes["confirmed"] = False
            elif other_confirmed or receiver_confirming:
                changes["manual_confirmation_status"] = ManualConfirmationStatus.CONFIRMED
                changes["confirmed"] = True
                changes["transfer_status"] = TransferStatus.COMPLETED
            else:
                changes["manual_confirmation_status"] = ManualConfirmationStatus.PENDING_CONFIRMATION
            return changes

        loan = self._loan_for_payment(payment_id, role, user_id)
        before, payment = self._update_with_retry(payment_id, prepare)
        status = payment.manual_confirmation_status

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_CONFIRMED if confirmed else AuditEventType.PAYMENT_DISPUTED,
            entity_type="payment",
            entity_id=payment.id,
            user_id=user_id,
            metadata={"confirmer_role": role.value, "status": status.value, "note": note}
        )

        amount = format_amount(payment.amount)
        other_party = loan.party_for_role(role.counterparty.value)
        anomalies: List[ReconciliationAnomaly] = []

        if status == ManualConfirmationStatus.CONFIRMED:
            if before.manual_confirmation_status != ManualConfirmationStatus.CONFIRMED:
                message = f"Payment of {amount} has been confirmed by both parties."
                self.notification_center.create_many([
                    (loan.lender_id, loan.id, NotificationType.PAYMENT_CONFIRMED, message),
                    (loan.borrower_id, loan.id, NotificationType.PAYMENT_CONFIRMED, message),
                ])
                self._audit_settled(payment, user_id)
                outcome = self._apply_lifecycle(payment)
                loan, anomalies = outcome.loan or loan, outcome.anomalies
        elif status == ManualConfirmationStatus.DISPUTED:
            self.notification_center.create(
                other_party, loan.id, NotificationType.PAYMENT_DISPUTED,
                f"Payment of {amount} has been disputed. Please review."
            )
            if before.is_settled or loan.status == LoanStatus.COMPLETED:
                anomalies = self._reconcile(payment)
        else:
            self.notification_center.create(
                other_party, loan.id, NotificationType.PAYMENT_AWAITING_CONFIRMATION,
                f"Payment of {amount} has been confirmed by {role.value}. Waiting for your confirmation."
            )

        return SettlementResult(
            payment=payment,
            loan=loan,
            message="Payment disputed" if not confirmed else "Payment confirmation recorded",
            anomalies=anomalies
        )

    # Reads

    def get_payment_details(self, payment_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Payment with its loan and both accounts"""
        payment = self.payment_ledger.require_payment(payment_id)
        loan = self.loan_manager.require_loan(payment.loan_id)
        self._check_party(loan, None, user_id)
        return {
            "payment": payment,
            "loan": loan,
            "from_account": self.account_manager.get_account(payment.from_account_id)
            if payment.from_account_id else None,
            "to_account": self.account_manager.get_account(payment.to_account_id)
            if payment.to_account_id else None,
        }

    def list_loan_payments(self, loan_id: str, user_id: Optional[str] = None) -> List[Payment]:
        loan = self.loan_manager.require_loan(loan_id)
        self._check_party(loan, None, user_id)
        return self.payment_ledger.list_for_loan(loan.id)

    # Helpers

    def _rail(self, method: PaymentMethod):
        rail = self.rails.get(method)
        if rail is None:
            raise ValidationError(f"Payment method {method.value} is not available")
        return rail

    def _require_method(self, payment: Payment, method: PaymentMethod) -> None:
        if payment.method != method:
            raise ValidationError(f"Payment is not a {method.value} payment")

    def _require_reference(self, payment: Payment, reference: str) -> None:
        """The provider reference must be the one stored when the payment was initiated"""
        if not payment.provider_reference:
            raise ValidationError("Payment has no provider reference to confirm")
        if payment.provider_reference != reference:
            raise ValidationError("Provider reference does not match this payment")

    def _check_party(self, loan: Loan, role: Optional[PartyRole], user_id: Optional[str]) -> None:
        if user_id is None:
            return
        if role is None:
            if user_id not in (loan.lender_id, loan.borrower_id):
                raise AuthorizationError("You are not a party to this loan")
        elif loan.party_for_role(role.value) != user_id:
            raise AuthorizationError(f"You are not the {role.value.lower()} on this loan")

    def _loan_for_payment(self, payment_id: str, role: PartyRole, user_id: Optional[str]) -> Loan:
        payment = self.payment_ledger.require_payment(payment_id)
        loan = self.loan_manager.require_loan(payment.loan_id)
        self._check_party(loan, role, user_id)
        return loan

    def _update_with_retry(
        self,
        payment_id: str,
        prepare: Callable[[Payment], Dict[str, Any]]
    ) -> Tuple[Payment, Payment]:
        """Re-read and re-apply prepare() until the version guard holds"""
        for attempt in range(self.manual_confirmation_retries):
            payment = self.payment_ledger.require_payment(payment_id)
            changes = prepare(payment)
            try:
                return payment, self.payment_ledger.update(payment, **changes)
            except ConflictError:
                if attempt == self.manual_confirmation_retries - 1:
                    raise
                self.logger.info(f"Payment {payment_id} changed concurrently, retrying")

    def _payout(self, rail: PayPalRail, payment: Payment, account: PaymentAccount, loan: Loan) -> RailResult:
        return rail.payout(
            amount=payment.amount,
            recipient_email=account.identifier,
            payer_role=payment.payer_role,
            receiver_role=payment.receiver_role,
            loan_id=loan.id
        )

    def _fail(self, payment: Payment, rail_result: RailResult, rail: PaymentRail) -> None:
        """Mark the payment FAILED and raise; the loan is left untouched"""
        reason = rail_result.error or "Payment processing failed"
        payment = self.payment_ledger.update(
            payment, transfer_status=TransferStatus.FAILED, failure_reason=reason
        )
        self._audit_failed(payment, reason, rail.name)
        raise ExternalRailError(reason, rail=rail.name, payment_id=payment.id)

    def _audit_failed(self, payment: Payment, reason: str, rail_name: str) -> None:
        log_action(
            self.logger, "error", f"Payment {payment.id} failed on {rail_name}: {reason}",
            action="payment_failed", resource=f"payment:{payment.id}",
            loan_id=payment.loan_id, rail=rail_name
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_FAILED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={"loan_id": payment.loan_id, "rail": rail_name, "reason": reason}
        )

    def _audit_settled(self, payment: Payment, user_id: Optional[str]) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_SETTLED,
            entity_type="payment",
            entity_id=payment.id,
            user_id=user_id,
            metadata={
                "loan_id": payment.loan_id,
                "amount": payment.amount,
                "method": payment.method.value,
                "payer_role": payment.payer_role.value
            }
        )

    def _already_settled(self, payment: Payment) -> SettlementResult:
        """Idempotent re-confirmation: re-apply the lifecycle, repeat no notifications"""
        outcome = self._apply_lifecycle(payment)
        return SettlementResult(payment=payment, loan=outcome.loan,
                                message="Payment already confirmed", anomalies=outcome.anomalies)

    def _settled_by_concurrent_writer(self, payment_id: str) -> SettlementResult:
        payment = self.payment_ledger.require_payment(payment_id)
        if payment.confirmed:
            return self._already_settled(payment)
        raise ConflictError(f"Payment {payment_id} was modified concurrently")

    def _apply_lifecycle(self, payment: Payment) -> LifecycleOutcome:
        try:
            return self.lifecycle.apply_settled_payment(payment)
        except Exception as e:
            anomaly = self._lifecycle_failure(payment, e)
            return LifecycleOutcome(loan=self.loan_manager.get_loan(payment.loan_id), anomalies=[anomaly])

    def _reconcile(self, payment: Payment) -> List[ReconciliationAnomaly]:
        try:
            return self.lifecycle.reconcile_loan(payment.loan_id).anomalies
        except Exception as e:
            return [self._lifecycle_failure(payment, e)]

    def _lifecycle_failure(self, payment: Payment, error: Exception) -> ReconciliationAnomaly:
        self.logger.exception(f"Lifecycle step failed for payment {payment.id}")
        return self.lifecycle.report_anomaly(
            payment.loan_id, "lifecycle_error",
            f"Loan state could not be updated after payment {payment.id} settled: {error}",
            {"payment_id": payment.id, "error_type": type(error).__name__}
        )

    def _notify_transfer_required(self, loan: Loan, payment: Payment) -> None:
        receiver_account = (
            self.account_manager.get_account(payment.to_account_id) if payment.to_account_id else None
        )
        handle = receiver_account.identifier if receiver_account else "the receiver"
        purpose = "loan funding" if payment.is_funding else "loan repayment"
        self.notification_center.create(
            loan.party_for_role(payment.payer_role.value),
            loan.id,
            NotificationType.TRANSFER_REQUIRED,
            f"Please manually send {format_amount(payment.amount)} via CashApp to {handle} "
            f"({payment.receiver_role.value.lower()}) to complete the {purpose}."
        )
