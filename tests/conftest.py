import mongomock
import pytest
from fastapi.testclient import TestClient

import errors
import main
from auth import CurrentUser
from database import ensure_indexes
from notifications import EmailSink, Notifier
from orders import OrderService
from payments import MockGateway, PaymentService
from returns import ReturnService
from schemas import ProductCreate, Role, StockVariant, Users
from stock import StockLedger

CUSTOMER = CurrentUser("user_customer", Role.CUSTOMER)
OTHER_CUSTOMER = CurrentUser("user_other", Role.CUSTOMER)
STAFF = CurrentUser("user_staff", Role.STAFF)
OTHER_STAFF = CurrentUser("user_staff_2", Role.STAFF)
ADMIN = CurrentUser("user_admin", Role.ADMIN)
MANAGER = CurrentUser("user_manager", Role.INVENTORY_MANAGER)

ADDRESS = {
    "name": "Ada Lovelace",
    "street": "12 Marylebone Rd",
    "city": "London",
    "state": "LDN",
    "zip": "NW1 5LR",
    "country": "UK",
}


class FlakyGateway(MockGateway):
    """Mock processor whose refunds can be switched off."""

    def __init__(self, intent_status="succeeded"):
        super().__init__(intent_status)
        self.refunds_fail = False

    def create_refund(self, intent_id, amount_minor):
        if self.refunds_fail:
            raise errors.ExternalServiceError("Your card was declined for refunds")
        return super().create_refund(intent_id, amount_minor)


@pytest.fixture
def db():
    database = mongomock.MongoClient().fashion_mart_test
    ensure_indexes(database)
    for user in (CUSTOMER, OTHER_CUSTOMER, STAFF, OTHER_STAFF, ADMIN, MANAGER):
        seeded = Users(id=user.id, email=f"{user.id}@fashionmart.io", role=user.role).model_dump(mode="json")
        seeded["_id"] = seeded.pop("id")
        database.users.insert_one(seeded)
    return database


@pytest.fixture
def gateway():
    return FlakyGateway()


@pytest.fixture
def notifier(db):
    return Notifier(db, EmailSink())


@pytest.fixture
def ledger(db, notifier):
    return StockLedger(db, notifier)


@pytest.fixture
def order_service(db, ledger, notifier):
    return OrderService(db, ledger, notifier)


@pytest.fixture
def payment_service(db, gateway, notifier):
    return PaymentService(db, gateway, notifier)


@pytest.fixture
def return_service(db, ledger, payment_service, notifier):
    return ReturnService(db, ledger, payment_service, notifier)


@pytest.fixture
def make_product(ledger):
    def _make(name="Linen Shirt", price=10.0, variants=None):
        variants = variants or [{"quantity": 20, "size": "M", "color": "white"}]
        product = ledger.create_product(ProductCreate(
            name=name,
            price=price,
            stocks=[StockVariant(**v) for v in variants],
        ))
        return product
    return _make


@pytest.fixture
def catalog(make_product):
    """Two products: $10 shirt (20 units) and $30 jacket (5 units)."""
    shirt = make_product("Linen Shirt", 10.0, [{"quantity": 20, "size": "M", "color": "white", "low_stock_threshold": 2}])
    jacket = make_product("Denim Jacket", 30.0, [{"quantity": 5, "size": "L", "color": "blue", "low_stock_threshold": 1}])
    return shirt, jacket


def line(product, quantity, variant=0):
    return {"product_id": product["id"], "stock_id": product["stocks"][variant]["id"], "quantity": quantity}


@pytest.fixture
def paid_order(catalog, order_service, payment_service):
    """The $50 order (2 x $10 shirt, 1 x $30 jacket), paid and in processing."""
    shirt, jacket = catalog
    order = order_service.create_order(CUSTOMER.id, [line(shirt, 2), line(jacket, 1)], ADDRESS)
    intent = payment_service.create_intent(order["id"], actor=CUSTOMER)
    payment_service.confirm(order["id"], intent["payment_intent_id"], actor=CUSTOMER)
    return order_service.get_order(order["id"])


@pytest.fixture
def delivered_order(paid_order, order_service):
    order_service.assign(paid_order["id"], STAFF.id)
    order_service.update_status(paid_order["id"], STAFF, "shipped")
    return order_service.update_status(paid_order["id"], STAFF, "delivered")


@pytest.fixture
def client(db, gateway):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_email] = lambda: EmailSink()
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


def headers(user):
    return {"X-User-Id": user.id, "X-User-Role": user.role.value}
