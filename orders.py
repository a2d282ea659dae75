"""
Order lifecycle: placement, status transitions, staff assignment.

Order status and payment status are two independent state machines. Every
transition is written with a filter on the status it starts from, so two
requests racing on the same order cannot both win.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

import config
import errors
from auth import CurrentUser
from database import as_naive_utc, create_document, find_by_id, to_obj_id, to_str_id, utcnow
from notifications import Notifier, short_id
from schemas import OrderItemRequest, OrderItems, Orders, Role, ShippingAddress
from stock import StockLedger

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    "pending": {"processing"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}

PAYMENT_TRANSITIONS = {
    "pending": {"paid", "failed"},
    "paid": {"refunded"},
    "failed": set(),
    "refunded": set(),
}

REQUIRED_ADDRESS_FIELDS = ("name", "street", "city", "state", "zip", "country")


def check_transition(current: str, new: str) -> None:
    if new not in ORDER_TRANSITIONS.get(current, set()):
        if not ORDER_TRANSITIONS.get(current):
            raise errors.InvalidTransitionError(f"Cannot change status from {current}")
        raise errors.InvalidTransitionError(f"Cannot change status from {current} to {new}")


def check_payment_transition(current: str, new: str) -> None:
    if new not in PAYMENT_TRANSITIONS.get(current, set()):
        raise errors.InvalidTransitionError(f"Cannot change payment status from {current} to {new}")


def coerce_address(address: Union[ShippingAddress, Dict[str, Any], None]) -> ShippingAddress:
    if isinstance(address, ShippingAddress):
        return address
    if not address:
        raise errors.ValidationError("Items and shipping address are required")
    for field in REQUIRED_ADDRESS_FIELDS:
        if not address.get(field):
            raise errors.ValidationError(f"Shipping address is missing {field}")
    try:
        return ShippingAddress(**address)
    except PydanticValidationError as e:
        raise errors.ValidationError(f"Invalid shipping address: {e.errors()[0]['msg']}")


class OrderService:
    def __init__(self, db: Database, ledger: StockLedger, notifier: Notifier):
        self.db = db
        self.ledger = ledger
        self.notifier = notifier

    # ----- placement -----

    def create_order(self, customer_id: str, items: List[Union[OrderItemRequest, dict]],
                     shipping_address: Union[ShippingAddress, dict]) -> dict:
        if not items:
            raise errors.ValidationError("Items and shipping address are required")
        address = coerce_address(shipping_address)
        try:
            items = [i if isinstance(i, OrderItemRequest) else OrderItemRequest(**i) for i in items]
        except PydanticValidationError:
            raise errors.ValidationError("Each item must have product_id, stock_id and quantity")

        # validate everything before touching stock
        lines = []
        requested: "OrderedDict[str, int]" = OrderedDict()
        names: Dict[str, str] = {}
        for item in items:
            product = find_by_id(self.db, "products", item.product_id, f"Product with ID {item.product_id}")
            if not product.get("active", True):
                raise errors.ValidationError(f"Product {product.get('name')} is not available")
            stock = find_by_id(self.db, "stocks", item.stock_id, f"Stock with ID {item.stock_id}")
            if stock["product_id"] != item.product_id:
                raise errors.ValidationError(f"Stock {item.stock_id} does not belong to product {item.product_id}")
            requested[item.stock_id] = requested.get(item.stock_id, 0) + item.quantity
            if stock["quantity"] < requested[item.stock_id]:
                raise errors.InsufficientStockError(f"Not enough stock for product {product.get('name')}")
            names[item.product_id] = product.get("name", item.product_id)
            price = round(float(product["price"]), 2)
            lines.append({
                "product_id": item.product_id,
                "stock_id": item.stock_id,
                "quantity": item.quantity,
                "price": price,
                "subtotal": round(price * item.quantity, 2),
            })
        total_amount = round(sum(line["subtotal"] for line in lines), 2)

        reserved = []
        try:
            for stock_id, quantity in requested.items():
                self.ledger.reserve(stock_id, quantity)
                reserved.append((stock_id, quantity))
            order = Orders(customer_id=customer_id, total_amount=total_amount, shipping_address=address)
            order_id = create_document(self.db, "orders", order)
            for line in lines:
                create_document(self.db, "order_items", OrderItems(order_id=order_id, **line))
        except Exception:
            for stock_id, quantity in reserved:
                self.ledger.release(stock_id, quantity)
            raise

        logger.info("Order %s created for customer %s, total %.2f", order_id, customer_id, total_amount)
        created = self.get_order(order_id)
        self.notifier.email_user(
            customer_id,
            f"FashionMart - Order Confirmation #{short_id(order_id)}",
            "Thank you for your order!\n"
            + "\n".join(f"{i['quantity']} x {names[i['product_id']]} - ${i['subtotal']:.2f}" for i in created["items"])
            + f"\nTotal Amount: ${total_amount:.2f}",
        )
        return created

    # ----- reads -----

    def get_order(self, order_id: str, viewer: Optional[CurrentUser] = None) -> dict:
        order = find_by_id(self.db, "orders", order_id, "Order")
        if viewer is not None and viewer.role == Role.CUSTOMER and order["customer_id"] != viewer.id:
            raise errors.AuthorizationError("Unauthorized")
        return self._expand(order)

    def _expand(self, order: dict) -> dict:
        order_id = str(order["_id"])
        d = to_str_id(order)
        d["items"] = [to_str_id(i) for i in self.db.order_items.find({"order_id": order_id})]
        payment = self.db.payments.find_one({"order_id": order_id}, sort=[("created_at", -1)])
        d["payment"] = to_str_id(payment)
        d["returns"] = [to_str_id(r) for r in self.db.returns.find({"order_id": order_id})]
        return d

    def list_orders(self, customer_id: Optional[str] = None) -> List[dict]:
        filt = {"customer_id": customer_id} if customer_id else {}
        return [self._expand(o) for o in self.db.orders.find(filt).sort("created_at", -1)]

    def pending_fulfilment(self) -> List[dict]:
        filt = {"status": "processing", "staff_id": None, "payment_status": "paid"}
        return [self._expand(o) for o in self.db.orders.find(filt).sort("created_at", 1)]

    def assigned_to(self, staff_id: str) -> List[dict]:
        filt = {"staff_id": staff_id, "status": {"$ne": "delivered"}}
        return [self._expand(o) for o in self.db.orders.find(filt).sort("updated_at", -1)]

    # ----- transitions -----

    def update_status(self, order_id: str, actor: CurrentUser, new_status: str,
                      notes: Optional[str] = None) -> dict:
        order = find_by_id(self.db, "orders", order_id, "Order")
        if actor.role == Role.STAFF and order.get("staff_id") != actor.id:
            raise errors.AuthorizationError("Unauthorized - this order is not assigned to you")
        current = order["status"]
        check_transition(current, new_status)

        update: Dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
        if notes:
            update["notes"] = notes
        if new_status == "delivered":
            update["return_deadline"] = utcnow() + timedelta(days=config.RETURN_WINDOW_DAYS)
        updated = self.db.orders.find_one_and_update(
            {"_id": order["_id"], "status": current},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise errors.InvalidTransitionError(f"Order {order_id} changed status concurrently, retry")
        logger.info("Order %s status %s -> %s by %s %s", order_id, current, new_status, actor.role.value, actor.id)

        self.notifier.notify(
            updated["customer_id"],
            "order_status",
            "Order Status Updated",
            f"Your order #{short_id(order_id)} has been updated to {new_status}",
            {"order_id": order_id, "status": new_status},
        )
        if new_status == "shipped":
            self.notifier.email_user(
                updated["customer_id"],
                f"FashionMart - Your Order #{short_id(order_id)} Has Shipped",
                "Good news! Your order is on its way.",
            )
        elif new_status == "delivered":
            self.notifier.email_user(
                updated["customer_id"],
                f"FashionMart - Your Order #{short_id(order_id)} Has Been Delivered",
                f"Your order has been delivered. You can request a return until "
                f"{updated['return_deadline']:%Y-%m-%d}.",
            )
        return self._expand(updated)

    def assign(self, order_id: str, staff_id: str) -> dict:
        oid = to_obj_id(order_id)
        updated = self.db.orders.find_one_and_update(
            {"_id": oid, "status": "processing", "payment_status": "paid", "staff_id": None},
            {"$set": {"staff_id": staff_id, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            order = find_by_id(self.db, "orders", order_id, "Order")
            if order.get("staff_id"):
                raise errors.AlreadyAssignedError("Order is already assigned to a staff member")
            raise errors.StateTransitionError("Order cannot be assigned in its current state")
        logger.info("Order %s assigned to staff %s", order_id, staff_id)
        return self._expand(updated)

    # ----- reporting -----

    def analytics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
        now = utcnow()
        start = as_naive_utc(start) or now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        end = as_naive_utc(end) or now
        orders = list(self.db.orders.find({
            "created_at": {"$gte": start, "$lte": end},
            "status": {"$ne": "cancelled"},
        }))
        by_status = {s: 0 for s in ORDER_TRANSITIONS}
        for o in orders:
            if o["status"] in by_status:
                by_status[o["status"]] += 1
        total_revenue = round(sum(float(o["total_amount"]) for o in orders), 2)
        total_orders = len(orders)
        return {
            "total_orders": total_orders,
            "total_revenue": total_revenue,
            "average_order_value": round(total_revenue / total_orders, 2) if total_orders else 0.0,
            "orders_by_status": by_status,
            "period_start": start,
            "period_end": end,
        }
