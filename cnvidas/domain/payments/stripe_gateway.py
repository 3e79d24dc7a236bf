"""Stripe gateway - pre-authorized consultation payments via PaymentIntents"""

import logging
from typing import Optional

import stripe

from ...config import (
    STRIPE_API_VERSION,
    STRIPE_CURRENCY,
    STRIPE_MAX_NETWORK_RETRIES,
    STRIPE_SECRET_KEY,
    STRIPE_TIMEOUT_SECONDS,
    ConfigurationError,
)
from .schemas import ConsultationMetadata

logger = logging.getLogger(__name__)

SECRET_KEY_PREFIXES = ("sk_", "rk_")


class GatewayError(Exception):
    """Raised when the payment processor rejects an operation"""

    def __init__(self, message: str, code: Optional[str] = None, intent_id: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.intent_id = intent_id

    @property
    def is_unexpected_state(self) -> bool:
        """The intent exists but is no longer in the state the operation requires"""
        return self.code == "payment_intent_unexpected_state"


def validate_secret_key(api_key: Optional[str]) -> str:
    """Fail fast on a missing key; only warn on a key that does not look like a secret key"""
    if not api_key:
        raise ConfigurationError("Missing required Stripe secret: STRIPE_SECRET_KEY")
    if not api_key.startswith(SECRET_KEY_PREFIXES):
        logger.warning(
            "⚠️ STRIPE_SECRET_KEY does not look like a secret key (expected prefix sk_ or rk_)"
        )
    return api_key


def to_minor_units(amount: float) -> int:
    """Convert a currency amount (reais) to minor units (centavos)"""
    return int(round(amount * 100))


class StripeGateway:
    """Creates, captures and cancels manual-capture PaymentIntents"""

    def __init__(
        self,
        api_key: str,
        currency: str = STRIPE_CURRENCY,
        timeout: int = STRIPE_TIMEOUT_SECONDS,
        max_network_retries: int = STRIPE_MAX_NETWORK_RETRIES,
    ):
        self.api_key = validate_secret_key(api_key)
        self.currency = currency

        stripe.api_key = self.api_key
        stripe.api_version = STRIPE_API_VERSION
        stripe.max_network_retries = max_network_retries
        # Bound every processor call; the SDK default is 80s
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        logger.info(f"Stripe client initialized (timeout={timeout}s, retries={max_network_retries})")

    @classmethod
    def from_config(cls) -> "StripeGateway":
        return cls(STRIPE_SECRET_KEY)

    def create_hold(self, amount: float, customer_id: str, metadata: ConsultationMetadata) -> str:
        """
        Reserve a consultation amount on the customer's card without capturing it.

        Args:
            amount: Price in whole currency units (reais), must be positive
            customer_id: Stripe customer ID
            metadata: Consultation details stored on the intent

        Returns:
            str: PaymentIntent ID
        """
        if amount is None or amount <= 0:
            raise ValueError("amount must be a positive number")

        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=self.currency,
                customer=customer_id,
                setup_future_usage="off_session",
                capture_method="manual",
                metadata=metadata.to_stripe(),
                description=(
                    f"Consulta com Dr. {metadata.doctor_name} em "
                    f"{metadata.appointment_date.strftime('%d/%m/%Y')}"
                ),
                idempotency_key=f"consultation-hold-{metadata.appointment_id}",
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create consultation hold for customer {customer_id}: {e}")
            raise GatewayError(str(e), code=getattr(e, "code", None)) from e

        logger.info(f"✅ Consultation hold created: {intent.id} ({to_minor_units(amount)} minor units)")
        return intent.id

    def capture(self, intent_id: str):
        """Capture a previously authorized PaymentIntent"""
        try:
            return stripe.PaymentIntent.capture(intent_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to capture payment intent {intent_id}: {e}")
            raise GatewayError(str(e), code=getattr(e, "code", None), intent_id=intent_id) from e

    def cancel(self, intent_id: str):
        """Release a hold without charging"""
        try:
            return stripe.PaymentIntent.cancel(
                intent_id, cancellation_reason="requested_by_customer"
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to cancel payment intent {intent_id}: {e}")
            raise GatewayError(str(e), code=getattr(e, "code", None), intent_id=intent_id) from e

    def check_status(self, intent_id: str):
        """Read-only lookup of a PaymentIntent"""
        try:
            return stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve payment intent {intent_id}: {e}")
            raise GatewayError(str(e), code=getattr(e, "code", None), intent_id=intent_id) from e
