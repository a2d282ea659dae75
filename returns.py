"""
Return workflow: pending -> approved -> completed, or pending -> rejected.

Approval claims the return (pending -> approved) before talking to the
processor. If the refund fails the claim is rolled back, so the return stays
pending and stock is untouched.
"""
import logging
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import errors
from database import create_document, find_by_id, to_obj_id, to_str_id, utcnow
from notifications import Notifier, short_id
from payments import PaymentService
from schemas import Returns
from stock import StockLedger

logger = logging.getLogger(__name__)


class ReturnService:
    def __init__(self, db: Database, ledger: StockLedger, payments: PaymentService, notifier: Notifier):
        self.db = db
        self.ledger = ledger
        self.payments = payments
        self.notifier = notifier

    def create_return(self, order_id: str, order_item_id: str, customer_id: str, reason: str,
                      images: Optional[List[str]] = None) -> dict:
        if not order_id or not order_item_id or not reason:
            raise errors.ValidationError("Order ID, order item ID and reason are required")
        order = find_by_id(self.db, "orders", order_id, "Order")
        if order["customer_id"] != customer_id:
            raise errors.AuthorizationError("Unauthorized")
        if order["status"] != "delivered":
            raise errors.StateTransitionError("Only delivered orders can be returned")
        deadline = order.get("return_deadline")
        if not deadline or utcnow() > deadline:
            raise errors.StateTransitionError("Return period has expired")
        item = self.db.order_items.find_one({"_id": to_obj_id(order_item_id), "order_id": order_id})
        if not item:
            raise errors.NotFoundError("Order item not found")
        if self.db.returns.find_one({"order_item_id": order_item_id}):
            raise errors.DuplicateReturnError("This item already has a return request")

        try:
            return_id = create_document(self.db, "returns", Returns(
                order_id=order_id,
                order_item_id=order_item_id,
                customer_id=customer_id,
                reason=reason,
                images=list(images or []),
            ))
        except DuplicateKeyError:
            raise errors.DuplicateReturnError("This item already has a return request")
        logger.info("Return %s filed for order item %s by customer %s", return_id, order_item_id, customer_id)
        self.notifier.email_user(
            customer_id,
            f"FashionMart - Return Request Received #{short_id(order_id)}",
            "We have received your return request and will review it shortly.",
        )
        return self.get_return(return_id)

    def get_return(self, return_id: str) -> dict:
        ret = to_str_id(find_by_id(self.db, "returns", return_id, "Return"))
        item = self.db.order_items.find_one({"_id": to_obj_id(ret["order_item_id"])})
        ret["order_item"] = to_str_id(item)
        return ret

    def for_customer(self, customer_id: str) -> List[dict]:
        return [to_str_id(r) for r in self.db.returns.find({"customer_id": customer_id}).sort("created_at", -1)]

    def pending(self) -> List[dict]:
        filt = {"status": "pending", "staff_id": None}
        return [to_str_id(r) for r in self.db.returns.find(filt).sort("created_at", 1)]

    def assigned_to(self, staff_id: str) -> List[dict]:
        filt = {"staff_id": staff_id, "status": {"$nin": ["completed", "rejected"]}}
        return [to_str_id(r) for r in self.db.returns.find(filt).sort("updated_at", -1)]

    def assign(self, return_id: str, staff_id: str) -> dict:
        updated = self.db.returns.find_one_and_update(
            {"_id": to_obj_id(return_id), "staff_id": None},
            {"$set": {"staff_id": staff_id, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            find_by_id(self.db, "returns", return_id, "Return")
            raise errors.AlreadyAssignedError("Return is already assigned to a staff member")
        logger.info("Return %s assigned to staff %s", return_id, staff_id)
        return self.get_return(return_id)

    def process(self, return_id: str, staff_id: str, decision: str, notes: Optional[str] = None) -> dict:
        if decision not in ("approved", "rejected"):
            raise errors.ValidationError("Invalid status")
        ret = find_by_id(self.db, "returns", return_id, "Return")
        if ret.get("staff_id") != staff_id:
            raise errors.NotAssignedError("Unauthorized - this return is not assigned to you")
        if ret["status"] != "pending":
            raise errors.AlreadyProcessedError("Return has already been processed")

        update = {"status": decision, "updated_at": utcnow()}
        if notes:
            update["notes"] = notes
        claimed = self.db.returns.find_one_and_update(
            {"_id": ret["_id"], "status": "pending", "staff_id": staff_id},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            raise errors.AlreadyProcessedError("Return has already been processed")

        if decision == "approved":
            claimed = self._complete(claimed)
        logger.info("Return %s %s by staff %s", return_id, claimed["status"], staff_id)

        order_ref = short_id(ret["order_id"])
        if decision == "approved":
            message = (f"Your return request for order #{order_ref} has been approved. "
                       f"Refund amount: ${claimed['refund_amount']:.2f}.")
        else:
            message = (f"Your return request for order #{order_ref} has been rejected. "
                       f"Reason: {notes or 'Not specified'}.")
        self.notifier.notify(
            ret["customer_id"],
            "return",
            "Return Status Updated",
            message,
            {
                "return_id": return_id,
                "order_id": ret["order_id"],
                "status": claimed["status"],
                "refund_amount": claimed.get("refund_amount"),
            },
        )
        return self.get_return(return_id)

    def _complete(self, ret: dict) -> dict:
        item = self.db.order_items.find_one({"_id": to_obj_id(ret["order_item_id"])})
        if not item:
            self._unclaim(ret)
            raise errors.NotFoundError("Order item not found")
        refund_amount = round(float(item["subtotal"]), 2)

        refund_id = None
        payment = self.payments.refundable_payment_for(ret["order_id"])
        if payment is not None:
            try:
                result = self.payments.refund(
                    str(payment["_id"]),
                    amount=refund_amount,
                    reason=f"Return {ret['_id']}: {ret['reason']}",
                    processed_by=ret["staff_id"],
                )
            except errors.AppError:
                self._unclaim(ret)
                raise
            refund_id = result["refund"]["refund_id"]

        # money may already be back with the customer: record it before restocking
        self.db.returns.update_one(
            {"_id": ret["_id"]},
            {"$set": {"refund_amount": refund_amount, "refund_id": refund_id, "updated_at": utcnow()}},
        )
        try:
            self.ledger.restore(item["stock_id"], item["quantity"])
        except Exception as e:
            logger.exception(
                "Return %s refunded (%s) but restocking %s x stock %s failed; left approved",
                ret["_id"], refund_id, item["quantity"], item["stock_id"],
            )
            raise errors.UnexpectedError(
                "Refund was issued but stock could not be restored; the return is left approved"
            ) from e
        return self.db.returns.find_one_and_update(
            {"_id": ret["_id"]},
            {"$set": {
                "status": "completed",
                "refund_amount": refund_amount,
                "refund_id": refund_id,
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )

    def _unclaim(self, ret: dict) -> None:
        self.db.returns.update_one(
            {"_id": ret["_id"], "status": "approved"},
            {"$set": {"status": "pending", "updated_at": utcnow()}},
        )
