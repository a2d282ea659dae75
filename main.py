import logging
import os
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import errors
from auth import CurrentUser, permit
from database import get_database, get_documents, to_str_id
from notifications import EmailSink, Notifier
from orders import OrderService
from payments import PaymentService, gateway_from_env
from returns import ReturnService
from schemas import (
    OrderCreate,
    PaymentConfirm,
    ProductCreate,
    RefundRequest,
    ReturnCreate,
    ReturnDecision,
    Role,
    StatusUpdate,
    StockUpdate,
)
from stock import StockLedger, serialize_stock

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("fashion_mart")

app = FastAPI(title="Fashion Mart Back Office API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# Envelope & error handlers
# -----------------------------

def ok(data=None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def fail(status_code: int, message: str, error: Optional[str] = None, data=None) -> JSONResponse:
    body = {"success": False, "message": message}
    if error:
        body["error"] = error
    if data is not None:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(errors.AppError)
def app_error_handler(request: Request, exc: errors.AppError):
    if exc.status_code >= 500:
        logger.error("Error on %s %s: %s", request.method, request.url.path, exc.message)
        message = "Internal Server Error" if config.is_production() else exc.message
        return fail(exc.status_code, message, exc.code)
    logger.info("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.message)
    return fail(exc.status_code, exc.message, exc.code)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg", "Invalid request"))
    return fail(400, message, errors.ValidationError.code)


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return fail(404, f"Not Found - {request.url.path}", errors.NotFoundError.code)
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = "Internal Server Error" if config.is_production() else str(exc)
    return fail(500, message, errors.UnexpectedError.code)


# -----------------------------
# Dependencies
# -----------------------------

def get_db() -> Database:
    return get_database()


def get_gateway():
    return gateway_from_env()


def get_email() -> EmailSink:
    return EmailSink.from_env()


def get_notifier(db: Database = Depends(get_db), email: EmailSink = Depends(get_email)) -> Notifier:
    return Notifier(db, email)


def get_ledger(db: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier)) -> StockLedger:
    return StockLedger(db, notifier)


def get_orders(db: Database = Depends(get_db), ledger: StockLedger = Depends(get_ledger),
               notifier: Notifier = Depends(get_notifier)) -> OrderService:
    return OrderService(db, ledger, notifier)


def get_payments(db: Database = Depends(get_db), gateway=Depends(get_gateway),
                 notifier: Notifier = Depends(get_notifier)) -> PaymentService:
    return PaymentService(db, gateway, notifier)


def get_returns(db: Database = Depends(get_db), ledger: StockLedger = Depends(get_ledger),
                payments: PaymentService = Depends(get_payments),
                notifier: Notifier = Depends(get_notifier)) -> ReturnService:
    return ReturnService(db, ledger, payments, notifier)


# -----------------------------
# Health & Test
# -----------------------------

@app.get("/")
def read_root():
    return {"message": "Fashion Mart API running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "❌ Not Set",
        "database_name": "❌ Not Set",
        "collections": [],
    }
    try:
        response["collections"] = db.list_collection_names()
        response["database"] = "✅ Connected"
        response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
        response["database_name"] = db.name
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    response["stripe_secret_key"] = "✅ Set" if config.STRIPE_SECRET_KEY else "❌ Not Set (mock payments)"
    return response


# -----------------------------
# Products
# -----------------------------

@app.get("/api/products")
def list_products(
    category_id: Optional[str] = Query(default=None),
    min_price: Optional[float] = Query(default=None),
    max_price: Optional[float] = Query(default=None),
    q: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Database = Depends(get_db),
    user: CurrentUser = Depends(permit("products:read")),
):
    filt = {"active": True}
    if category_id:
        filt["category_id"] = category_id
    if min_price is not None or max_price is not None:
        price_query = {}
        if min_price is not None:
            price_query["$gte"] = float(min_price)
        if max_price is not None:
            price_query["$lte"] = float(max_price)
        filt["price"] = price_query
    if q:
        filt["name"] = {"$regex": q, "$options": "i"}
    return ok([to_str_id(d) for d in get_documents(db, "products", filt, limit)])


@app.get("/api/products/{product_id}")
def get_product(product_id: str, ledger: StockLedger = Depends(get_ledger),
                user: CurrentUser = Depends(permit("products:read"))):
    return ok(ledger.get_product(product_id))


# -----------------------------
# Inventory
# -----------------------------

@app.post("/api/inventory/products")
def create_product(payload: ProductCreate, ledger: StockLedger = Depends(get_ledger),
                   user: CurrentUser = Depends(permit("inventory:manage"))):
    return ok(ledger.create_product(payload), "Product created successfully", 201)


@app.put("/api/inventory/stock/{stock_id}")
def update_stock(stock_id: str, payload: StockUpdate, ledger: StockLedger = Depends(get_ledger),
                 user: CurrentUser = Depends(permit("inventory:manage"))):
    stock = ledger.adjust(stock_id, payload.quantity, payload.low_stock_threshold)
    return ok(serialize_stock(stock), "Stock updated successfully")


@app.get("/api/inventory/stock/low")
def low_stock(ledger: StockLedger = Depends(get_ledger),
              user: CurrentUser = Depends(permit("inventory:manage"))):
    return ok([serialize_stock(s) for s in ledger.low_stock()])


# -----------------------------
# Orders
# -----------------------------

@app.post("/api/orders")
def create_order(payload: OrderCreate, orders: OrderService = Depends(get_orders),
                 user: CurrentUser = Depends(permit("orders:create"))):
    order = orders.create_order(user.id, payload.items, payload.shipping_address)
    return ok(order, "Order created successfully", 201)


@app.get("/api/orders")
def list_orders(orders: OrderService = Depends(get_orders),
                user: CurrentUser = Depends(permit("orders:read"))):
    customer_id = user.id if user.role == Role.CUSTOMER else None
    return ok(orders.list_orders(customer_id))


@app.get("/api/orders/analytics")
def order_analytics(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                    orders: OrderService = Depends(get_orders),
                    user: CurrentUser = Depends(permit("orders:analytics"))):
    return ok(orders.analytics(start_date, end_date))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, orders: OrderService = Depends(get_orders),
              user: CurrentUser = Depends(permit("orders:read"))):
    return ok(orders.get_order(order_id, viewer=user))


@app.post("/api/orders/{order_id}/payment")
def create_payment_intent(order_id: str, payments: PaymentService = Depends(get_payments),
                          user: CurrentUser = Depends(permit("orders:pay"))):
    return ok(payments.create_intent(order_id, actor=user))


@app.post("/api/orders/{order_id}/payment/confirm")
def confirm_payment(order_id: str, body: PaymentConfirm, payments: PaymentService = Depends(get_payments),
                    user: CurrentUser = Depends(permit("orders:pay"))):
    result = payments.confirm(order_id, body.payment_intent_id, actor=user)
    if not result["confirmed"]:
        return fail(400, "Payment not succeeded", "payment_not_succeeded",
                    data={"payment_status": result["payment_status"]})
    return ok({"order": result["order"], "payment": result["payment"]}, "Payment confirmed")


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdate, orders: OrderService = Depends(get_orders),
                        user: CurrentUser = Depends(permit("orders:update_status"))):
    order = orders.update_status(order_id, user, body.status, body.notes)
    return ok(order, "Order status updated successfully")


# -----------------------------
# Staff queues
# -----------------------------

@app.get("/api/staff/orders/pending")
def pending_orders(orders: OrderService = Depends(get_orders),
                   user: CurrentUser = Depends(permit("fulfilment:claim"))):
    return ok(orders.pending_fulfilment())


@app.get("/api/staff/orders/assigned")
def assigned_orders(orders: OrderService = Depends(get_orders),
                    user: CurrentUser = Depends(permit("fulfilment:claim"))):
    return ok(orders.assigned_to(user.id))


@app.post("/api/staff/orders/{order_id}/assign")
def assign_order(order_id: str, orders: OrderService = Depends(get_orders),
                 user: CurrentUser = Depends(permit("fulfilment:claim"))):
    return ok(orders.assign(order_id, user.id), "Order assigned successfully")


@app.get("/api/staff/returns/pending")
def pending_returns(returns: ReturnService = Depends(get_returns),
                    user: CurrentUser = Depends(permit("returns:process"))):
    return ok(returns.pending())


@app.get("/api/staff/returns/assigned")
def assigned_returns(returns: ReturnService = Depends(get_returns),
                     user: CurrentUser = Depends(permit("returns:process"))):
    return ok(returns.assigned_to(user.id))


@app.post("/api/staff/returns/{return_id}/assign")
def assign_return(return_id: str, returns: ReturnService = Depends(get_returns),
                  user: CurrentUser = Depends(permit("returns:process"))):
    return ok(returns.assign(return_id, user.id), "Return assigned successfully")


# -----------------------------
# Returns
# -----------------------------

@app.post("/api/returns")
def create_return(body: ReturnCreate, returns: ReturnService = Depends(get_returns),
                  user: CurrentUser = Depends(permit("returns:create"))):
    ret = returns.create_return(body.order_id, body.order_item_id, user.id, body.reason, body.images)
    return ok(ret, "Return request created successfully", 201)


@app.get("/api/returns")
def list_returns(returns: ReturnService = Depends(get_returns),
                 user: CurrentUser = Depends(permit("returns:read_own"))):
    return ok(returns.for_customer(user.id))


@app.put("/api/returns/{return_id}/process")
def process_return(return_id: str, body: ReturnDecision, returns: ReturnService = Depends(get_returns),
                   user: CurrentUser = Depends(permit("returns:process"))):
    ret = returns.process(return_id, user.id, body.status, body.notes)
    verb = "approved and processed" if body.status == "approved" else "rejected"
    return ok(ret, f"Return {verb} successfully")


# -----------------------------
# Payments
# -----------------------------

@app.get("/api/payments")
def list_payments(payments: PaymentService = Depends(get_payments),
                  user: CurrentUser = Depends(permit("payments:list"))):
    return ok(payments.list_payments())


@app.get("/api/payments/date-range")
def payments_by_date_range(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                           payments: PaymentService = Depends(get_payments),
                           user: CurrentUser = Depends(permit("payments:read"))):
    return ok(payments.date_range(start_date, end_date))


@app.get("/api/payments/{payment_id}")
def get_payment(payment_id: str, payments: PaymentService = Depends(get_payments),
                user: CurrentUser = Depends(permit("payments:read"))):
    return ok(payments.get_payment(payment_id))


@app.post("/api/payments/{payment_id}/refund")
def refund_payment(payment_id: str, body: RefundRequest, payments: PaymentService = Depends(get_payments),
                   user: CurrentUser = Depends(permit("payments:refund"))):
    result = payments.refund(payment_id, body.amount, body.reason, processed_by=user.id)
    return ok(result, "Refund processed successfully")


# -----------------------------
# Notifications
# -----------------------------

@app.get("/api/notifications")
def list_notifications(unread: bool = False, notifier: Notifier = Depends(get_notifier),
                       user: CurrentUser = Depends(permit("notifications:read"))):
    return ok([to_str_id(n) for n in notifier.for_user(user.id, unread_only=unread)])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
