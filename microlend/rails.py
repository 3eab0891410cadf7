"""
Payment Rail Adapters Module

Polymorphic adapters for the rails a payment can move over:

- InternalWalletRail: instant, settles inside initiate()
- StripeRail: two-phase card processor (create intent, later retrieve status)
- PayPalRail: payout network (create, execute after payer approval, then payout)
- ManualTransferRail: CashApp/Zelle transfers finalized by human attestation

Adapters never raise on remote failure: they return RailResult(success=False)
with the remote message, and the settlement engine decides what that means
for the payment. HTTP rails take an injectable httpx.Client so they can be
pointed at a mock transport in tests.
"""

import httpx
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

from .payments import PaymentMethod, PartyRole
from .errors import ExternalRailError

logger = logging.getLogger("microlend.rails")


@dataclass
class PaymentContext:
    """What a rail needs to know about the payment it is moving"""
    payment_id: str
    loan_id: str
    amount: Decimal
    method: PaymentMethod
    payer_role: PartyRole
    receiver_role: PartyRole
    from_identifier: Optional[str] = None  # payer's handle/email on this rail
    to_identifier: Optional[str] = None    # receiver's handle/email on this rail


@dataclass
class RailResult:
    """Outcome of a rail call"""
    success: bool
    transaction_id: Optional[str] = None
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    provider_reference: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, status: Optional[str] = None) -> 'RailResult':
        return cls(success=False, error=error, status=status)


def _money(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class PaymentRail(ABC):
    """Common initiate/confirm contract"""
    name = "rail"
    instant = False  # settles synchronously inside initiate()
    manual = False   # finalized by the dual-attestation protocol

    @abstractmethod
    def initiate(self, context: PaymentContext) -> RailResult:
        pass

    def confirm(self, reference: str, **kwargs) -> RailResult:
        return RailResult.failure(f"{self.name} has no confirmation phase")

    def close(self) -> None:
        pass


class InternalWalletRail(PaymentRail):
    """Platform wallet transfer, always succeeds synchronously"""
    name = "INTERNAL_WALLET"
    instant = True

    def initiate(self, context: PaymentContext) -> RailResult:
        transaction_id = f"internal_{uuid.uuid4().hex}"
        return RailResult(success=True, transaction_id=transaction_id, status="COMPLETED")


class ManualTransferRail(PaymentRail):
    """Transfer made by the payer outside the platform; no remote call"""
    manual = True

    def __init__(self, name: str):
        self.name = name

    def initiate(self, context: PaymentContext) -> RailResult:
        return RailResult(success=True, status="PENDING_UPLOAD")


class StripeRail(PaymentRail):
    """Card-style processor: payment intents confirmed client-side"""
    name = "STRIPE"

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.stripe.com",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None
    ):
        secret_key = (secret_key or "").strip()
        if not secret_key:
            raise ValueError("Stripe secret key is required")
        if not secret_key.startswith("sk_"):
            raise ValueError("Invalid Stripe secret key format")

        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def initiate(self, context: PaymentContext) -> RailResult:
        """Create a payment intent and hand back its client secret"""
        cents = self.to_cents(context.amount)
        payer, receiver = context.payer_role.value, context.receiver_role.value
        form = {
            "amount": str(cents),
            "currency": "usd",
            "description": (
                f"{payer} to {receiver} - From: {context.from_identifier or 'N/A'} "
                f"To: {context.to_identifier or 'N/A'}"
            ),
            "metadata[payment_id]": context.payment_id,
            "metadata[loan_id]": context.loan_id,
            "metadata[payer_role]": payer,
            "metadata[receiver_role]": receiver,
            "automatic_payment_methods[enabled]": "true",
        }
        try:
            response = self._client.post(
                f"{self.base_url}/v1/payment_intents", data=form, auth=(self.secret_key, "")
            )
            data = response.json()
            if response.status_code >= 400:
                return RailResult.failure(self._error_message(data, "Payment processing failed"))

            return RailResult(
                success=True,
                transaction_id=data["id"],
                provider_reference=data["id"],
                client_secret=data.get("client_secret"),
                status=data.get("status"),
                data=data
            )
        except Exception as e:
            logger.error(f"Stripe intent creation failed: {e}")
            return RailResult.failure(str(e) or "Payment processing failed")

    def confirm(self, reference: str, **kwargs) -> RailResult:
        """
        Retrieve the intent; only status == succeeded counts as success

        When payment_id and amount are given, the intent must carry the same
        payment_id in its metadata and the same amount in cents.
        """
        try:
            response = self._client.get(
                f"{self.base_url}/v1/payment_intents/{reference}", auth=(self.secret_key, "")
            )
            data = response.json()
            if response.status_code >= 400:
                return RailResult.failure(self._error_message(data, "Payment confirmation failed"))

            status = data.get("status")
            if status != "succeeded":
                return RailResult(
                    success=False, transaction_id=data.get("id"), status=status,
                    error=f"Payment status: {status}", data=data
                )
            mismatch = self.intent_mismatch(data, kwargs.get("payment_id"), kwargs.get("amount"))
            if mismatch:
                return RailResult(success=False, transaction_id=data.get("id"), status=status,
                                  error=mismatch, data=data)
            return RailResult(
                success=True, transaction_id=data["id"], provider_reference=data["id"],
                status=status, data=data
            )
        except Exception as e:
            logger.error(f"Stripe intent retrieval failed: {e}")
            return RailResult.failure(str(e) or "Payment confirmation failed")

    @staticmethod
    def to_cents(amount) -> int:
        return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def intent_mismatch(cls, intent: Dict[str, Any], payment_id: Optional[str], amount) -> Optional[str]:
        """Why a succeeded intent cannot settle the given payment, or None"""
        metadata = intent.get("metadata") or {}
        if payment_id is not None and metadata.get("payment_id") != payment_id:
            return "Payment intent does not belong to this payment"
        if amount is not None and intent.get("amount") != cls.to_cents(amount):
            return "Payment intent amount does not match the payment"
        return None

    @staticmethod
    def _error_message(data: Dict[str, Any], default: str) -> str:
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            return error.get("message") or default
        return default

    def close(self) -> None:
        self._client.close()


class PayPalRail(PaymentRail):
    """Payout network: approve-then-execute collection plus payouts to receivers"""
    name = "PAYPAL"

    SANDBOX_URL = "https://api.sandbox.paypal.com"
    LIVE_URL = "https://api.paypal.com"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        environment: str = "sandbox",
        frontend_url: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None
    ):
        client_id = (client_id or "").strip()
        client_secret = (client_secret or "").strip()
        if not client_id or not client_secret:
            raise ValueError("PayPal credentials are required")

        self.client_id = client_id
        self.client_secret = client_secret
        self.environment = environment
        self.base_url = self.LIVE_URL if environment == "live" else self.SANDBOX_URL
        self.frontend_url = frontend_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        """OAuth client-credentials token, cached until shortly before expiry"""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = self._client.post(
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
            headers={"Accept": "application/json", "Accept-Language": "en_US"}
        )
        data = response.json()
        if response.status_code >= 400:
            raise ExternalRailError(
                f"PayPal auth failed: {data.get('error_description') or data.get('error')}",
                rail=self.name
            )

        self._token = data["access_token"]
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        return self._token

    def _request(self, method: str, path: str, **kwargs) -> Tuple[int, Dict[str, Any]]:
        headers = {"Authorization": f"Bearer {self._access_token()}", "Content-Type": "application/json"}
        response = self._client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        return response.status_code, response.json()

    def initiate(self, context: PaymentContext) -> RailResult:
        """Create a sale payment and return the payer approval URL"""
        payer, receiver = context.payer_role.value, context.receiver_role.value
        dashboard = "lender-dashboard" if context.payer_role == PartyRole.LENDER else "borrower-dashboard"
        redirect = f"{self.frontend_url}/{dashboard}"
        amount = _money(context.amount)
        body = {
            "intent": "sale",
            "payer": {"payment_method": "paypal"},
            "transactions": [{
                "amount": {"total": amount, "currency": "USD"},
                "description": f"{payer} to {receiver} payment for loan {context.loan_id}",
                "custom": f"loan_{context.loan_id}",
                "item_list": {
                    "items": [{
                        "name": f"Loan Payment - {payer} to {receiver}",
                        "sku": f"loan_{context.loan_id}",
                        "price": amount,
                        "currency": "USD",
                        "quantity": 1
                    }]
                }
            }],
            "redirect_urls": {"return_url": redirect, "cancel_url": redirect}
        }
        try:
            status_code, data = self._request("POST", "/v1/payments/payment", json=body)
            if status_code >= 400:
                return RailResult.failure(data.get("message") or "PayPal payment creation failed")

            approval_url = next(
                (link.get("href") for link in data.get("links", []) if link.get("rel") == "approval_url"),
                None
            )
            return RailResult(
                success=True,
                transaction_id=data["id"],
                provider_reference=data["id"],
                approval_url=approval_url,
                status=data.get("state"),
                data=data
            )
        except Exception as e:
            logger.error(f"PayPal payment creation failed: {e}")
            return RailResult.failure(str(e) or "PayPal payment creation failed")

    def confirm(self, reference: str, **kwargs) -> RailResult:
        """Execute an approved payment; only state == approved counts as success"""
        payer_id = kwargs.get("payer_id")
        try:
            status_code, data = self._request(
                "POST", f"/v1/payments/payment/{reference}/execute", json={"payer_id": payer_id}
            )
            if status_code >= 400:
                return RailResult.failure(data.get("message") or "PayPal payment execution failed")

            state = data.get("state")
            if state != "approved":
                return RailResult(success=False, status=state, error=f"PayPal payment state: {state}", data=data)
            return RailResult(
                success=True, transaction_id=data.get("id"), provider_reference=data.get("id"),
                status=state, data=data
            )
        except Exception as e:
            logger.error(f"PayPal payment execution failed: {e}")
            return RailResult.failure(str(e) or "PayPal payment execution failed")

    def payout(
        self,
        amount: Decimal,
        recipient_email: str,
        payer_role: PartyRole,
        receiver_role: PartyRole,
        loan_id: str
    ) -> RailResult:
        """Send funds to a receiver's PayPal email"""
        body = {
            "sender_batch_header": {
                "sender_batch_id": f"loan_{loan_id}_{uuid.uuid4().hex[:12]}",
                "email_subject": "You have a payment from Microlend",
                "email_message": f"Payment from {payer_role.value} for loan {loan_id}"
            },
            "items": [{
                "recipient_type": "EMAIL",
                "amount": {"value": _money(amount), "currency": "USD"},
                "receiver": recipient_email,
                "note": f"{payer_role.value} to {receiver_role.value} payment for loan {loan_id}",
                "sender_item_id": f"payment_{uuid.uuid4().hex[:12]}"
            }]
        }
        try:
            status_code, data = self._request("POST", "/v1/payments/payouts", json=body)
            if status_code >= 400:
                return RailResult.failure(data.get("message") or "PayPal payout failed")

            batch_id = data["batch_header"]["payout_batch_id"]
            return RailResult(
                success=True,
                transaction_id=batch_id,
                provider_reference=batch_id,
                status=data["batch_header"].get("batch_status"),
                data=data
            )
        except Exception as e:
            logger.error(f"PayPal payout failed: {e}")
            return RailResult.failure(str(e) or "PayPal payout failed")

    def payout_status(self, payout_batch_id: str) -> RailResult:
        try:
            status_code, data = self._request("GET", f"/v1/payments/payouts/{payout_batch_id}")
            if status_code >= 400:
                return RailResult.failure(data.get("message") or "Failed to check payout status")
            return RailResult(
                success=True,
                transaction_id=payout_batch_id,
                status=data["batch_header"]["batch_status"],
                data=data
            )
        except Exception as e:
            logger.error(f"PayPal payout status check failed: {e}")
            return RailResult.failure(str(e) or "Status check failed")

    def close(self) -> None:
        self._client.close()


class MockStripeRail(StripeRail):
    """In-process card processor for testing"""

    def __init__(self, intent_status: str = "succeeded", initiate_error: Optional[str] = None):
        super().__init__(secret_key="sk_test_mock")
        self.intent_status = intent_status
        self.initiate_error = initiate_error
        self.intents: Dict[str, Dict[str, Any]] = {}

    def initiate(self, context: PaymentContext) -> RailResult:
        if self.initiate_error:
            return RailResult.failure(self.initiate_error)
        intent_id = f"pi_mock_{uuid.uuid4().hex[:16]}"
        self.intents[intent_id] = {
            "id": intent_id,
            "status": self.intent_status,
            "amount": self.to_cents(context.amount),
            "metadata": {"payment_id": context.payment_id, "loan_id": context.loan_id},
        }
        return RailResult(
            success=True,
            transaction_id=intent_id,
            provider_reference=intent_id,
            client_secret=f"{intent_id}_secret_mock",
            status="requires_payment_method"
        )

    def confirm(self, reference: str, **kwargs) -> RailResult:
        intent = self.intents.get(reference)
        if intent is None:
            return RailResult.failure(f"No such payment_intent: '{reference}'")
        status = intent["status"]
        if status != "succeeded":
            return RailResult(success=False, transaction_id=reference, status=status,
                              error=f"Payment status: {status}")
        mismatch = self.intent_mismatch(intent, kwargs.get("payment_id"), kwargs.get("amount"))
        if mismatch:
            return RailResult(success=False, transaction_id=reference, status=status, error=mismatch)
        return RailResult(success=True, transaction_id=reference, provider_reference=reference, status=status)


class MockPayPalRail(PayPalRail):
    """In-process payout network for testing"""

    def __init__(self, approve: bool = True, payout_succeeds: bool = True):
        super().__init__(client_id="mock-client", client_secret="mock-secret",
                         frontend_url="http://localhost:3000")
        self.approve = approve
        self.payout_succeeds = payout_succeeds
        self.payouts = []

    def initiate(self, context: PaymentContext) -> RailResult:
        payment_id = f"PAYID-MOCK-{uuid.uuid4().hex[:12].upper()}"
        return RailResult(
            success=True,
            transaction_id=payment_id,
            provider_reference=payment_id,
            approval_url=f"https://www.sandbox.paypal.com/checkoutnow?token={payment_id}",
            status="created"
        )

    def confirm(self, reference: str, **kwargs) -> RailResult:
        if not self.approve:
            return RailResult(success=False, status="failed", error="PayPal payment state: failed")
        return RailResult(success=True, transaction_id=reference, provider_reference=reference, status="approved")

    def payout(self, amount, recipient_email, payer_role, receiver_role, loan_id) -> RailResult:
        if not self.payout_succeeds:
            return RailResult.failure("Receiver is unregistered")
        batch_id = f"BATCH-MOCK-{uuid.uuid4().hex[:10].upper()}"
        self.payouts.append({"amount": amount, "receiver": recipient_email, "batch_id": batch_id})
        return RailResult(success=True, transaction_id=batch_id, provider_reference=batch_id, status="PENDING")

    def payout_status(self, payout_batch_id: str) -> RailResult:
        return RailResult(success=True, transaction_id=payout_batch_id, status="SUCCESS")


def build_rails(config, client: Optional[httpx.Client] = None) -> Dict[PaymentMethod, PaymentRail]:
    """
    Construct the rail adapters once at startup

    Args:
        config: MicrolendConfig carrying rail credentials
        client: Optional shared httpx.Client for the HTTP rails

    Returns:
        Mapping of payment method to adapter; unconfigured HTTP rails are omitted
    """
    rails: Dict[PaymentMethod, PaymentRail] = {
        PaymentMethod.INTERNAL_WALLET: InternalWalletRail(),
        PaymentMethod.CASHAPP: ManualTransferRail("CASHAPP"),
        PaymentMethod.ZELLE: ManualTransferRail("ZELLE"),
    }

    if config.stripe_secret_key:
        rails[PaymentMethod.STRIPE] = StripeRail(
            secret_key=config.stripe_secret_key,
            base_url=config.stripe_base_url,
            timeout=config.rail_timeout,
            client=client
        )

    if config.paypal_client_id and config.paypal_client_secret:
        rails[PaymentMethod.PAYPAL] = PayPalRail(
            client_id=config.paypal_client_id,
            client_secret=config.paypal_client_secret,
            environment=config.paypal_environment,
            frontend_url=config.frontend_url,
            timeout=config.rail_timeout,
            client=client
        )

    return rails
