"""Thin wrapper over the Stripe SDK.

Every Stripe exception is translated here into the app's error kinds, so the
rest of the code never imports ``stripe`` except for webhook verification
through ``StripeGateway.verify_event``.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import stripe

from app.core.config import settings
from app.core.errors import (
    ConflictError,
    PaymentConfigurationError,
    PaymentDeclinedError,
    PaymentProviderUnavailable,
    UnauthorizedError,
)
from app.services.pricing_service import from_cents, to_cents

logger = logging.getLogger(__name__)

DECLINE_MESSAGE = "Payment declined, please try another card"


@dataclass
class StripeConfig:
    secret_key: str
    currency: str = "usd"
    env: str = "dev"
    webhook_secrets: list[str] = field(default_factory=list)  # tried in order (live, then test)


@dataclass
class IntentResult:
    id: str
    status: str  # requires_payment_method | requires_action | requires_capture | processing | succeeded | canceled
    amount: float
    amount_capturable: float = 0.0
    amount_received: float = 0.0
    client_secret: Optional[str] = None
    payment_method: Optional[str] = None
    customer: Optional[str] = None

    @property
    def requires_action(self) -> bool:
        return self.status == "requires_action"


def _val(obj: Any, name: str, default: Any = None) -> Any:
    """Field from a StripeObject or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _id_of(obj: Any) -> Optional[str]:
    if obj is None or isinstance(obj, str):
        return obj
    return _val(obj, "id")


def intent_result(pi: Any) -> IntentResult:
    return IntentResult(
        id=_val(pi, "id"),
        status=_val(pi, "status", ""),
        amount=from_cents(_val(pi, "amount", 0)),
        amount_capturable=from_cents(_val(pi, "amount_capturable", 0)),
        amount_received=from_cents(_val(pi, "amount_received", 0)),
        client_secret=_val(pi, "client_secret"),
        payment_method=_id_of(_val(pi, "payment_method")),
        customer=_id_of(_val(pi, "customer")),
    )


def _raise_mapped(exc: stripe.StripeError) -> None:
    """Map Stripe SDK errors onto the app's error kinds. Always raises."""
    detail = f"{type(exc).__name__}: {getattr(exc, 'user_message', None) or str(exc)}"
    if isinstance(exc, stripe.CardError):
        code = getattr(exc, "code", "") or ""
        decline_code = getattr(exc, "decline_code", "") or ""
        raise PaymentDeclinedError(DECLINE_MESSAGE, cause=f"{code or 'card_error'}/{decline_code or '-'}: {detail}") from exc
    if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)):
        raise PaymentProviderUnavailable("Payment processor temporarily unavailable", cause=detail) from exc
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        raise PaymentConfigurationError("Payment processor misconfigured", cause=detail) from exc
    if isinstance(exc, stripe.InvalidRequestError):
        raise ConflictError("Payment processor rejected the request", cause=detail) from exc
    raise PaymentProviderUnavailable("Payment processor error", cause=detail) from exc


class StripeGateway:
    def __init__(self, cfg: StripeConfig):
        self.cfg = cfg

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        secrets = [s for s in (settings.STRIPE_WEBHOOK_SECRET, settings.STRIPE_WEBHOOK_SECRET_TEST) if s]
        return cls(StripeConfig(
            secret_key=settings.STRIPE_SECRET_KEY,
            currency=settings.STRIPE_CURRENCY,
            env=settings.STRIPE_ENV,
            webhook_secrets=secrets,
        ))

    def _key(self) -> str:
        if not self.cfg.secret_key:
            raise PaymentConfigurationError("Payment processor misconfigured", cause="STRIPE_SECRET_KEY not set")
        return self.cfg.secret_key

    def _metadata(self, metadata: dict | None) -> dict:
        out = {"env": self.cfg.env}
        out.update({k: str(v) for k, v in (metadata or {}).items()})
        return out

    # -- customers ------------------------------------------------------------

    def ensure_customer(self, email: str, name: str = "", phone: str = "") -> str:
        """Find the processor customer by email, creating one if none exists."""
        key = self._key()
        try:
            found = stripe.Customer.list(email=email, limit=1, api_key=key)
            data = _val(found, "data") or []
            if data:
                return _val(data[0], "id")
            customer = stripe.Customer.create(
                email=email,
                name=name or None,
                phone=phone or None,
                metadata=self._metadata({"source": "rental-booking"}),
                api_key=key,
                idempotency_key=f"customer:{email.lower()}",
            )
        except stripe.StripeError as exc:
            _raise_mapped(exc)
        return customer.id

    def latest_payment_method(self, customer_id: str) -> Optional[str]:
        """Most recently attached card for the customer, if any."""
        if not customer_id:
            return None
        try:
            methods = stripe.PaymentMethod.list(customer=customer_id, type="card", limit=1, api_key=self._key())
        except stripe.StripeError as exc:
            _raise_mapped(exc)
        data = _val(methods, "data") or []
        return _val(data[0], "id") if data else None

    # -- payment intents ------------------------------------------------------

    def create_deposit_intent(self, *, amount: float, customer_id: str, metadata: dict, idempotency_key: str) -> IntentResult:
        """Manual-capture hold, confirmed client side; the card is saved for later off-session charges."""
        try:
            pi = stripe.PaymentIntent.create(
                amount=to_cents(amount),
                currency=self.cfg.currency,
                customer=customer_id,
                capture_method="manual",
                setup_future_usage="off_session",
                automatic_payment_methods={"enabled": True},
                metadata=self._metadata({**metadata, "type": "security_deposit"}),
                api_key=self._key(),
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            _raise_mapped(exc)
        return intent_result(pi)

    def charge_off_session(
        self,
        *,
        amount: float,
        customer_id: str,
        payment_method_id: str,
        metadata: dict,
        idempotency_key: str,
        description: str = "",
        manual_capture: bool = False,
    ) -> IntentResult:
        """Confirm an intent against a saved card without the customer present.

        Returns the intent; a ``requires_action`` status means the bank wants
        3-D Secure. Declines raise PaymentDeclinedError.
        """
        try:
            pi = stripe.PaymentIntent.create(
                amount=to_cents(amount),
                currency=self.cfg.currency,
                customer=customer_id or None,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                capture_method="manual" if manual_capture else "automatic",
                description=description or None,
                metadata=self._metadata(metadata),
                api_key=self._key(),
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as exc:
            # Off-session confirmation that needs 3-D Secure comes back as a card error carrying the intent.
            pi = _val(getattr(exc, "error", None), "payment_intent")
            if (getattr(exc, "code", "") == "authentication_required") and pi is not None:
                logger.info("off-session charge %s requires customer authentication", _val(pi, "id"))
                res = intent_result(pi)
                res.status = "requires_action"
                return res
            _raise_mapped(exc)
        except stripe.StripeError as exc:
            _raise_mapped(exc)
        res = intent_result(pi)
        if res.status == "requires_payment_method":
            raise PaymentDeclinedError(DECLINE_MESSAGE, cause=f"intent {res.id} returned requires_payment_method")
        return res

    def capture(self, intent_id: str, amount: Optional[float] = None, idempotency_key: Optional[str] = None) -> IntentResult:
        params: dict[str, Any] = {}
        if amount is not None:
            params["amount_to_capture"] = to_cents(amount)
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            pi = stripe.PaymentIntent.capture(intent_id, api_key=self._key(), **params)
        except stripe.StripeError as exc:
            _raise_mapped(exc)
        return intent_result(pi)

    def retrieve(self, intent_id: str) -> IntentResult:
        try:
            pi = stripe.PaymentIntent.retrieve(intent_id, api_key=self._key())
        except stripe.StripeError as exc:
            _raise_mapped(exc)
        return intent_result(pi)

    def cancel(self, intent_id: str) -> IntentResult:
        try:
            pi = stripe.PaymentIntent.cancel(intent_id, api_key=self._key())
        except stripe.StripeError as exc:
            _raise_mapped(exc)
        return intent_result(pi)

    # -- webhooks -------------------------------------------------------------

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> dict:
        """Check the Stripe-Signature header against each configured secret; return the parsed event."""
        if not self.cfg.webhook_secrets:
            raise PaymentConfigurationError("Webhook secret not configured", cause="STRIPE_WEBHOOK_SECRET not set")
        if not sig_header:
            raise UnauthorizedError("Missing signature")
        last_error: Exception | None = None
        for secret in self.cfg.webhook_secrets:
            try:
                stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
            except stripe.SignatureVerificationError as exc:
                last_error = exc
                continue
            except ValueError as exc:
                raise UnauthorizedError("Invalid payload", cause=str(exc)) from exc
            return json.loads(payload)
        raise UnauthorizedError("Invalid signature", cause=str(last_error)) from last_error
