"""
Stock ledger: per-variant quantities for sellable products.

Quantities only move through conditional ``find_one_and_update`` calls so a
read that validated availability and the decrement it guards are one atomic
step on the stock document.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database

import config
import errors
from database import create_document, find_by_id, to_obj_id, to_str_id, utcnow
from notifications import Notifier
from schemas import ProductCreate, Products, Stocks

logger = logging.getLogger(__name__)


def is_low(stock: dict) -> bool:
    return stock.get("quantity", 0) <= stock.get("low_stock_threshold", config.DEFAULT_LOW_STOCK_THRESHOLD)


def serialize_stock(stock: dict) -> dict:
    d = to_str_id(stock)
    d["is_low_stock"] = is_low(stock)
    return d


class StockLedger:
    def __init__(self, db: Database, notifier: Notifier):
        self.db = db
        self.notifier = notifier

    def get(self, stock_id: str) -> dict:
        return find_by_id(self.db, "stocks", stock_id, "Stock")

    def reserve(self, stock_id: str, quantity: int) -> Tuple[int, int]:
        """Take ``quantity`` units out of a variant.

        Returns ``(previous, new)``. Raises ``InsufficientStockError`` when the
        variant holds fewer units than requested; nothing is changed then.
        """
        if quantity < 1:
            raise errors.ValidationError("Quantity must be at least 1")
        before = self.db.stocks.find_one_and_update(
            {"_id": to_obj_id(stock_id), "quantity": {"$gte": quantity}},
            {"$inc": {"quantity": -quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.BEFORE,
        )
        if before is None:
            current = self.get(stock_id)
            raise errors.InsufficientStockError(
                f"Not enough stock for variant {stock_id}: requested {quantity}, available {current.get('quantity', 0)}"
            )
        previous = before["quantity"]
        new = previous - quantity
        logger.info("Reserved %s units of stock %s (%s -> %s)", quantity, stock_id, previous, new)
        self._check_low({**before, "quantity": new})
        return previous, new

    def restore(self, stock_id: str, quantity: int) -> Tuple[int, int]:
        if quantity < 1:
            raise errors.ValidationError("Quantity must be at least 1")
        after = self._increment(stock_id, quantity)
        new = after["quantity"]
        logger.info("Restored %s units of stock %s (%s -> %s)", quantity, stock_id, new - quantity, new)
        self._check_low(after)
        return new - quantity, new

    def release(self, stock_id: str, quantity: int) -> None:
        """Undo a reservation of an order that could not be placed."""
        self._increment(stock_id, quantity)
        logger.info("Released %s units of stock %s after failed order placement", quantity, stock_id)

    def _increment(self, stock_id: str, quantity: int) -> dict:
        after = self.db.stocks.find_one_and_update(
            {"_id": to_obj_id(stock_id)},
            {"$inc": {"quantity": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if after is None:
            raise errors.NotFoundError("Stock not found")
        return after

    def adjust(self, stock_id: str, quantity: Optional[int] = None,
               low_stock_threshold: Optional[int] = None) -> dict:
        """Inventory manager override of a variant's quantity or threshold."""
        update: Dict[str, Any] = {"updated_at": utcnow()}
        if quantity is not None:
            if quantity < 0:
                raise errors.ValidationError("Quantity cannot be negative")
            update["quantity"] = quantity
        if low_stock_threshold is not None:
            update["low_stock_threshold"] = low_stock_threshold
        if len(update) == 1:
            raise errors.ValidationError("No fields to update")
        after = self.db.stocks.find_one_and_update(
            {"_id": to_obj_id(stock_id)}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        if after is None:
            raise errors.NotFoundError("Stock not found")
        logger.info("Stock %s adjusted: %s", stock_id, {k: v for k, v in update.items() if k != "updated_at"})
        self._check_low(after)
        return after

    def low_stock(self) -> List[dict]:
        return [s for s in self.db.stocks.find({}) if is_low(s)]

    def _check_low(self, stock: dict) -> None:
        # fires on every update that leaves the variant at or below threshold
        if not is_low(stock):
            return
        product = self.db.products.find_one({"_id": to_obj_id(stock["product_id"])}) or {}
        name = product.get("name", "Unknown product")
        stock_id = str(stock["_id"])
        for manager in self.notifier.inventory_managers():
            self.notifier.notify(
                str(manager["_id"]),
                "low_stock",
                "Low Stock Alert",
                f"Product {name} is running low on stock. Current quantity: {stock['quantity']}",
                {
                    "product_id": stock["product_id"],
                    "stock_id": stock_id,
                    "quantity": stock["quantity"],
                    "threshold": stock.get("low_stock_threshold"),
                },
            )
            self.notifier.email_user(
                str(manager["_id"]),
                f"FashionMart - Low Stock Alert: {name}",
                f"{name} ({stock.get('size') or '-'} / {stock.get('color') or '-'}) is down to "
                f"{stock['quantity']} units (threshold {stock.get('low_stock_threshold')}).",
            )

    # ----- catalog -----

    def create_product(self, payload: ProductCreate) -> dict:
        for variant in payload.stocks:
            if variant.size is None and variant.color is None:
                raise errors.ValidationError("Each stock item must have quantity and at least size or color")
        product = Products(**payload.model_dump(exclude={"stocks"}))
        product_id = create_document(self.db, "products", product)
        for variant in payload.stocks:
            threshold = variant.low_stock_threshold
            if threshold is None:
                threshold = config.DEFAULT_LOW_STOCK_THRESHOLD
            create_document(self.db, "stocks", Stocks(
                product_id=product_id,
                quantity=variant.quantity,
                size=variant.size,
                color=variant.color,
                low_stock_threshold=threshold,
            ))
        logger.info("Product %s created with %s stock variants", product_id, len(payload.stocks))
        return self.get_product(product_id)

    def get_product(self, product_id: str) -> dict:
        product = to_str_id(find_by_id(self.db, "products", product_id, "Product"))
        product["stocks"] = [serialize_stock(s) for s in self.db.stocks.find({"product_id": product_id})]
        return product
