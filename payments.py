"""
Payment reconciliation against the card processor.

Amounts are stored in dollars and sent to the processor in integer cents.
When no ``STRIPE_SECRET_KEY`` is configured the service falls back to an
offline mock processor so local setups can walk the whole order flow.
"""
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any, Dict, List, NamedTuple, Optional

import requests
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

import config
import errors
from auth import CurrentUser
from database import as_naive_utc, create_document, find_by_id, to_obj_id, to_str_id, utcnow
from notifications import Notifier, short_id
from orders import check_payment_transition
from schemas import Payments, Refunds, Role

logger = logging.getLogger(__name__)


def to_minor_units(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# a payment stays refundable after a partial refund until the balance is used up
REFUNDABLE_STATUSES = ("succeeded", "refunded")
CENT_TOLERANCE = 0.001


def refundable_balance(payment: dict) -> float:
    if payment.get("status") not in REFUNDABLE_STATUSES:
        return 0.0
    return round(float(payment["amount"]) - float(payment.get("amount_refunded") or 0.0), 2)


class Intent(NamedTuple):
    id: str
    client_secret: Optional[str]
    status: str


# -----------------------------
# Processors
# -----------------------------

class StripeGateway:
    def __init__(self, secret_key: str, api_base: str = config.STRIPE_API_BASE, timeout: float = config.PAYMENT_TIMEOUT):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def _call(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        try:
            resp = requests.request(
                method,
                f"{self.api_base}{path}",
                auth=(self.secret_key, ""),
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise errors.ExternalServiceError(f"Payment processor unreachable: {e}")
        if resp.status_code >= 300:
            try:
                message = resp.json().get("error", {}).get("message") or resp.text
            except ValueError:
                message = resp.text
            raise errors.ExternalServiceError(message)
        return resp.json()

    def create_intent(self, amount_minor: int, currency: str, metadata: Dict[str, str]) -> Intent:
        data = {"amount": amount_minor, "currency": currency}
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = value
        body = self._call("POST", "/payment_intents", data)
        return Intent(body["id"], body.get("client_secret"), body.get("status", "requires_payment_method"))

    def retrieve_intent(self, intent_id: str) -> Intent:
        body = self._call("GET", f"/payment_intents/{intent_id}")
        return Intent(body["id"], body.get("client_secret"), body["status"])

    def create_refund(self, intent_id: str, amount_minor: int) -> str:
        body = self._call("POST", "/refunds", {
            "payment_intent": intent_id,
            "amount": amount_minor,
            "reason": "requested_by_customer",
        })
        return body["id"]


class MockGateway:
    """Offline processor: every intent it creates reports ``intent_status``."""

    def __init__(self, intent_status: str = "succeeded"):
        self.intent_status = intent_status
        self.intents: Dict[str, int] = {}
        self.refunds: Dict[str, int] = {}

    def create_intent(self, amount_minor: int, currency: str, metadata: Dict[str, str]) -> Intent:
        intent_id = f"pi_mock_{ObjectId()}"
        self.intents[intent_id] = amount_minor
        return Intent(intent_id, f"{intent_id}_secret_mock", "requires_payment_method")

    def retrieve_intent(self, intent_id: str) -> Intent:
        if intent_id not in self.intents:
            raise errors.ExternalServiceError(f"No such payment_intent: '{intent_id}'")
        return Intent(intent_id, f"{intent_id}_secret_mock", self.intent_status)

    def create_refund(self, intent_id: str, amount_minor: int) -> str:
        if intent_id not in self.intents:
            raise errors.ExternalServiceError(f"No such payment_intent: '{intent_id}'")
        refund_id = f"re_mock_{ObjectId()}"
        self.refunds[refund_id] = amount_minor
        return refund_id


@lru_cache(maxsize=1)
def gateway_from_env():
    if config.STRIPE_SECRET_KEY:
        return StripeGateway(config.STRIPE_SECRET_KEY)
    logger.warning("STRIPE_SECRET_KEY not set, using the mock payment processor")
    return MockGateway()


# -----------------------------
# Service
# -----------------------------

class PaymentService:
    def __init__(self, db: Database, gateway, notifier: Notifier):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier

    def _order_for(self, order_id: str, actor: Optional[CurrentUser]) -> dict:
        order = find_by_id(self.db, "orders", order_id, "Order")
        if actor is not None and actor.role == Role.CUSTOMER and order["customer_id"] != actor.id:
            raise errors.AuthorizationError("Unauthorized")
        return order

    def create_intent(self, order_id: str, actor: Optional[CurrentUser] = None) -> dict:
        order = self._order_for(order_id, actor)
        if order["payment_status"] == "paid":
            raise errors.AlreadyPaidError("Order is already paid")
        check_payment_transition(order["payment_status"], "paid")
        if order["status"] != "pending":
            raise errors.InvalidTransitionError(f"Cannot take payment for a {order['status']} order")
        intent = self.gateway.create_intent(
            to_minor_units(order["total_amount"]),
            config.PAYMENT_CURRENCY,
            {"order_id": order_id, "customer_id": order["customer_id"]},
        )
        payment_id = create_document(self.db, "payments", Payments(
            order_id=order_id,
            customer_id=order["customer_id"],
            amount=order["total_amount"],
            payment_intent_id=intent.id,
            status="pending",
            method="card",
        ))
        logger.info("Payment intent %s created for order %s (payment %s)", intent.id, order_id, payment_id)
        return {"client_secret": intent.client_secret, "payment_id": payment_id, "payment_intent_id": intent.id}

    def confirm(self, order_id: str, intent_id: str, actor: Optional[CurrentUser] = None) -> dict:
        order = self._order_for(order_id, actor)
        payment = self.db.payments.find_one({"order_id": order_id, "payment_intent_id": intent_id})
        if not payment:
            raise errors.NotFoundError("Payment not found")
        if order["payment_status"] == "paid":
            raise errors.AlreadyPaidError("Order is already paid")

        intent = self.gateway.retrieve_intent(intent_id)
        if intent.status != "succeeded":
            logger.info("Payment intent %s for order %s is %s", intent_id, order_id, intent.status)
            return {"confirmed": False, "payment_status": intent.status}

        check_payment_transition(order["payment_status"], "paid")
        if order["status"] != "pending":
            raise errors.InvalidTransitionError(f"Cannot confirm payment for a {order['status']} order")
        now = utcnow()
        # the payment row is claimed first; the order write is undone on failure
        updated_payment = self.db.payments.find_one_and_update(
            {"_id": payment["_id"], "status": "pending"},
            {"$set": {"status": "succeeded", "external_payment_id": intent.id, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated_payment is None:
            raise errors.AlreadyPaidError("Payment has already been confirmed")
        try:
            updated_order = self.db.orders.find_one_and_update(
                {"_id": order["_id"], "status": "pending", "payment_status": order["payment_status"]},
                {"$set": {"payment_status": "paid", "status": "processing", "updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )
            if updated_order is None:
                raise errors.AlreadyPaidError("Order is already paid")
        except Exception:
            self.db.payments.update_one(
                {"_id": payment["_id"], "status": "succeeded"},
                {"$set": {"status": "pending", "external_payment_id": None, "updated_at": utcnow()}},
            )
            logger.warning("Order %s could not be marked paid, payment %s set back to pending",
                           order_id, payment["_id"])
            raise
        logger.info("Payment %s succeeded, order %s is paid", payment["_id"], order_id)
        self.notifier.notify(
            order["customer_id"],
            "payment",
            "Payment Received",
            f"We received your payment of ${float(payment['amount']):.2f} for order #{short_id(order_id)}.",
            {"order_id": order_id, "payment_id": str(payment["_id"])},
        )
        return {"confirmed": True, "order": to_str_id(updated_order), "payment": to_str_id(updated_payment)}

    def refund(self, payment_id: str, amount: Optional[float] = None, reason: Optional[str] = None,
               processed_by: Optional[str] = None) -> dict:
        payment = find_by_id(self.db, "payments", payment_id, "Payment")
        if payment["status"] not in REFUNDABLE_STATUSES:
            raise errors.PaymentNotSuccessfulError("Payment cannot be refunded as it is not successful")
        original = float(payment["amount"])
        remaining = refundable_balance(payment)
        if remaining <= 0:
            raise errors.PaymentNotSuccessfulError("Payment has already been fully refunded")
        refund_amount = round(float(amount), 2) if amount is not None else remaining
        if refund_amount <= 0:
            raise errors.ValidationError("Refund amount must be positive")
        if refund_amount > remaining + CENT_TOLERANCE:
            raise errors.ValidationError(f"Refund amount exceeds the refundable balance of {remaining:.2f}")

        # reserve the amount on the payment so concurrent refunds cannot overdraw it
        claimed = self.db.payments.find_one_and_update(
            {
                "_id": payment["_id"],
                "status": {"$in": list(REFUNDABLE_STATUSES)},
                "amount_refunded": {"$lte": original - refund_amount + CENT_TOLERANCE},
            },
            {"$inc": {"amount_refunded": refund_amount}, "$set": {"status": "refunded", "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            raise errors.ValidationError("Refund amount exceeds the refundable balance")
        try:
            refund_id = self.gateway.create_refund(payment["payment_intent_id"], to_minor_units(refund_amount))
        except errors.ExternalServiceError:
            self._release_refund(payment["_id"], refund_amount)
            logger.warning("Refund of %.2f for payment %s rejected by processor", refund_amount, payment_id)
            raise

        payment = claimed
        order_id = payment["order_id"]
        if float(payment["amount_refunded"]) >= original - CENT_TOLERANCE:
            # paid -> refunded is the only edge into refunded
            self.db.orders.update_one(
                {"_id": to_obj_id(order_id), "payment_status": "paid"},
                {"$set": {"payment_status": "refunded", "updated_at": utcnow()}},
            )
        record_id = create_document(self.db, "refunds", Refunds(
            payment_id=payment_id,
            order_id=order_id,
            amount=refund_amount,
            reason=reason or "Customer request",
            refund_id=refund_id,
            processed_by=processed_by,
        ))
        logger.info("Refund %s of %.2f processed for payment %s", refund_id, refund_amount, payment_id)

        self.notifier.notify(
            payment["customer_id"],
            "payment",
            "Refund Processed",
            f"A refund of ${refund_amount:.2f} for your order #{short_id(order_id)} has been processed.",
            {"order_id": order_id, "payment_id": payment_id, "refund_id": record_id, "amount": refund_amount},
        )
        self.notifier.email_user(
            payment["customer_id"],
            f"FashionMart - Refund Confirmation #{short_id(order_id)}",
            f"A refund of ${refund_amount:.2f} has been issued to your original payment method.",
        )
        return {
            "refund": to_str_id(self.db.refunds.find_one({"_id": ObjectId(record_id)})),
            "payment": to_str_id(payment),
        }

    def _release_refund(self, payment_oid: ObjectId, amount: float) -> None:
        after = self.db.payments.find_one_and_update(
            {"_id": payment_oid},
            {"$inc": {"amount_refunded": -amount}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if after is not None and float(after["amount_refunded"]) <= CENT_TOLERANCE:
            self.db.payments.update_one(
                {"_id": payment_oid, "status": "refunded", "amount_refunded": {"$lte": CENT_TOLERANCE}},
                {"$set": {"status": "succeeded", "amount_refunded": 0.0}},
            )

    def refundable_payment_for(self, order_id: str) -> Optional[dict]:
        """The order's captured payment that still has money left to refund."""
        cursor = self.db.payments.find(
            {"order_id": order_id, "status": {"$in": list(REFUNDABLE_STATUSES)}}
        ).sort("created_at", -1)
        for payment in cursor:
            if refundable_balance(payment) > 0:
                return payment
        return None

    def get_payment(self, payment_id: str) -> dict:
        payment = to_str_id(find_by_id(self.db, "payments", payment_id, "Payment"))
        payment["refunds"] = [to_str_id(r) for r in self.db.refunds.find({"payment_id": payment_id})]
        return payment

    def list_payments(self) -> List[dict]:
        return [to_str_id(p) for p in self.db.payments.find({}).sort("created_at", -1)]

    def date_range(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        now = utcnow()
        start = as_naive_utc(start) or now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        end = as_naive_utc(end) or now
        payments = list(self.db.payments.find({"created_at": {"$gte": start, "$lte": end}}).sort("created_at", -1))
        count_by_status = {"pending": 0, "succeeded": 0, "failed": 0, "refunded": 0}
        for p in payments:
            if p["status"] in count_by_status:
                count_by_status[p["status"]] += 1
        total = sum(float(p["amount"]) for p in payments if p["status"] == "succeeded")
        return {
            "payments": [to_str_id(p) for p in payments],
            "analytics": {
                "total_amount": round(total, 2),
                "total_count": len(payments),
                "count_by_status": count_by_status,
            },
        }
