"""Payment bridge: gateway orders, signature verification and settlement.

The gateway only creates orders and moves money. Whether a booking is paid
is decided locally: the client hands back ``order_id``, ``payment_id`` and
the gateway's signature, and only a signature matching
``HMAC-SHA256(key_secret, order_id + "|" + payment_id)`` flips the booking
to ``paid``. In Stripe mode the client never sees such a signature; there
the signed ``payment_intent.succeeded`` webhook is the gate instead.
"""

import asyncio
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from .config import Settings
from .errors import Conflict, Internal, InvalidInput, NotFound, Unauthorized

logger = logging.getLogger(__name__)


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def compute_signature(key_secret: str, order_id: str, payment_id: str) -> str:
    body = f"{order_id}|{payment_id}"
    return hmac.new(key_secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(key_secret: str, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
    if not signature or not order_id or not payment_id:
        return False
    expected = compute_signature(key_secret, order_id, payment_id)
    return hmac.compare_digest(expected, signature)


# -------------------------------------------------
# Gateways
# -------------------------------------------------


class OfflineGateway:
    """Used when PAYMENT_MODE=offline: ids are generated locally, nothing is charged."""

    mode = "offline"

    async def create_order(self, amount_minor: int, currency: str, metadata: Dict[str, str], receipt: str) -> str:
        order_id = f"order_offline_{uuid.uuid4().hex[:14]}"
        logger.info("Offline order %s for %d %s (%s)", order_id, amount_minor, currency, receipt)
        return order_id

    async def refund(self, order_id: str, payment_id: Optional[str], amount_minor: int) -> Optional[str]:
        logger.info("Offline refund of %d for order %s recorded in ledger only", amount_minor, order_id)
        return None


class StripeGateway:
    mode = "stripe"

    def __init__(self, api_key: str):
        stripe.api_key = api_key

    async def create_order(self, amount_minor: int, currency: str, metadata: Dict[str, str], receipt: str) -> str:
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.create,
            amount=amount_minor,
            currency=currency.lower(),
            metadata=metadata,
            description=receipt,
        )
        return intent["id"]

    async def refund(self, order_id: str, payment_id: Optional[str], amount_minor: int) -> Optional[str]:
        refund = await asyncio.to_thread(stripe.Refund.create, payment_intent=order_id, amount=amount_minor)
        return refund["id"]


def build_gateway(settings: Settings):
    if settings.payment_mode == "stripe" and settings.stripe_secret_key:
        return StripeGateway(settings.stripe_secret_key)
    return OfflineGateway()


# -------------------------------------------------
# Bridge
# -------------------------------------------------


@dataclass
class VerificationResult:
    success: bool
    msg: str
    booking: Optional[Dict[str, Any]] = None


class PaymentBridge:
    def __init__(
        self,
        store,
        gateway,
        key_secret: Optional[str],
        currency: str = "INR",
        webhook_secret: Optional[str] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.key_secret = key_secret
        self.currency = currency
        self.webhook_secret = webhook_secret

    async def _owned_booking(self, caller_id: str, booking_id: str) -> Dict[str, Any]:
        booking = await self.store.get_booking(booking_id)
        if not booking:
            raise NotFound("Booking not found")
        if booking["user_id"] != caller_id:
            raise Unauthorized("Not authorized")
        return booking

    async def create_order(self, caller_id: str, booking_id: str, amount: float) -> Dict[str, Any]:
        if amount is None or amount <= 0:
            raise InvalidInput("Amount must be greater than zero")
        booking = await self._owned_booking(caller_id, booking_id)
        if booking["payment_status"] != "pending":
            raise Conflict("Booking is already paid")

        amount_minor = to_minor_units(amount)
        receipt = f"receipt_booking_{booking_id}"
        metadata = {"booking_id": booking_id, "user_id": caller_id}
        try:
            order_id = await self.gateway.create_order(amount_minor, self.currency, metadata, receipt)
        except stripe.error.StripeError as e:
            logger.error("Payment gateway error creating order for booking %s: %s", booking_id, e)
            raise Internal("Error creating order")

        # a verification may have landed while the gateway call was in flight
        booking = await self.store.transition_payment(booking_id, "pending", {"order_id": order_id, "amount": amount})
        if booking is None:
            logger.warning("Order %s discarded: booking %s left pending payment", order_id, booking_id)
            raise Conflict("Booking is already paid")
        logger.info("Order %s created for booking %s (%d minor units)", order_id, booking_id, amount_minor)
        return {
            "id": order_id,
            "amount": amount_minor,
            "currency": self.currency,
            "receipt": receipt,
            "booking": booking,
        }

    async def verify_payment(
        self, caller_id: str, booking_id: str, order_id: str, payment_id: str, signature: str
    ) -> VerificationResult:
        if not self.key_secret:
            logger.error("PAYMENT_KEY_SECRET not configured; cannot verify payments")
            raise Internal("Payment verification is not configured")
        booking = await self._owned_booking(caller_id, booking_id)

        if not verify_signature(self.key_secret, order_id, payment_id, signature):
            logger.warning("Invalid payment signature for booking %s", booking_id)
            return VerificationResult(False, "Invalid signature")
        if booking.get("order_id") and booking["order_id"] != order_id:
            logger.warning("Order %s does not belong to booking %s", order_id, booking_id)
            return VerificationResult(False, "Invalid signature")

        updated = await self.store.transition_payment(
            booking_id, "pending", {"payment_status": "paid", "payment_id": payment_id}
        )
        if updated is None:
            current = await self.store.get_booking(booking_id)
            if current and current.get("payment_status") == "paid" and current.get("payment_id") == payment_id:
                return VerificationResult(True, "Payment verified successfully", current)
            raise Conflict("Payment already processed")
        logger.info("Payment %s verified for booking %s", payment_id, booking_id)
        return VerificationResult(True, "Payment verified successfully", updated)

    async def handle_stripe_webhook(self, payload: bytes, sig_header: Optional[str]) -> Optional[Dict[str, Any]]:
        """Mark a booking paid from a signed ``payment_intent.succeeded`` event.

        Returns the updated booking, or None when the event is ignored.
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
            raise Internal("Payment webhook is not configured")
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except stripe.error.SignatureVerificationError:
            raise InvalidInput("Invalid signature")
        except ValueError:
            raise InvalidInput("Invalid payload")

        if event["type"] != "payment_intent.succeeded":
            return None
        intent = event["data"]["object"]
        order_id = intent["id"]
        booking_id = intent["metadata"].get("booking_id")
        booking = await self.store.get_booking(booking_id) if booking_id else None
        if not booking or booking.get("order_id") != order_id:
            logger.warning("Webhook for intent %s matches no booking order", order_id)
            return None

        updated = await self.store.transition_payment(
            booking_id, "pending", {"payment_status": "paid", "payment_id": order_id}
        )
        if updated is None:
            # redelivered event
            logger.info("Intent %s already applied to booking %s", order_id, booking_id)
            return await self.store.get_booking(booking_id)
        logger.info("Payment intent %s succeeded for booking %s", order_id, booking_id)
        return updated

    async def release_payment(self, caller_id: str, booking_id: str) -> Dict[str, Any]:
        booking = await self._owned_booking(caller_id, booking_id)
        if booking["status"] != "completed":
            raise InvalidInput("Only completed bookings can release payment")
        if booking["payment_status"] != "paid":
            raise InvalidInput(f"Cannot release payment in state {booking['payment_status']}")

        updated = await self.store.transition_payment(booking_id, "paid", {"payment_status": "released"})
        if updated is None:
            raise Conflict("Payment state changed, please retry")
        logger.info("Payment released for booking %s", booking_id)
        return updated

    async def refund_payment(self, caller_id: str, booking_id: str) -> Dict[str, Any]:
        booking = await self.store.get_booking(booking_id)
        if not booking:
            raise NotFound("Booking not found")
        allowed = {booking["user_id"]}
        if booking.get("labourer_id"):
            labourer = await self.store.get_labourer(booking["labourer_id"])
            if labourer and labourer.get("user_id"):
                allowed.add(labourer["user_id"])
        if caller_id not in allowed:
            raise Unauthorized("Not authorized")
        if booking["status"] != "cancelled":
            raise InvalidInput("Only cancelled bookings can be refunded")
        if booking["payment_status"] != "paid":
            raise InvalidInput(f"Cannot refund payment in state {booking['payment_status']}")

        amount_minor = to_minor_units(booking.get("amount") or 0)
        try:
            refund_id = await self.gateway.refund(booking.get("order_id"), booking.get("payment_id"), amount_minor)
        except stripe.error.StripeError as e:
            logger.error("Payment gateway error refunding booking %s: %s", booking_id, e)
            raise Internal("Error refunding payment")

        updated = await self.store.transition_payment(booking_id, "paid", {"payment_status": "refunded"})
        if updated is None:
            raise Conflict("Payment state changed, please retry")
        logger.info("Payment refunded for booking %s (refund %s)", booking_id, refund_id)
        return updated
