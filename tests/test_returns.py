from datetime import timedelta

import pytest
from pymongo.errors import DuplicateKeyError

import errors
from conftest import ADDRESS, ADMIN, CUSTOMER, OTHER_CUSTOMER, OTHER_STAFF, STAFF, line
from database import to_obj_id, utcnow


def item_for(order, price):
    return next(i for i in order["items"] if i["price"] == price)


def stock_qty(db, stock_id):
    return db.stocks.find_one({"_id": to_obj_id(stock_id)})["quantity"]


def test_scenario_return_second_item_after_delivery(db, delivered_order, return_service):
    jacket_item = item_for(delivered_order, 30.0)
    before = stock_qty(db, jacket_item["stock_id"])

    ret = return_service.create_return(delivered_order["id"], jacket_item["id"], CUSTOMER.id, "Too small")
    assert ret["status"] == "pending"
    return_service.assign(ret["id"], STAFF.id)
    done = return_service.process(ret["id"], STAFF.id, "approved", notes="Tags intact")

    assert done["status"] == "completed"
    assert done["refund_amount"] == 30.0
    assert done["refund_id"].startswith("re_mock_")
    assert done["notes"] == "Tags intact"
    assert stock_qty(db, jacket_item["stock_id"]) == before + 1
    refunds = list(db.refunds.find({"order_id": delivered_order["id"]}))
    assert len(refunds) == 1
    assert refunds[0]["amount"] == jacket_item["subtotal"]
    # partial refund: the order stays paid
    assert db.orders.find_one({"_id": to_obj_id(delivered_order["id"])})["payment_status"] == "paid"


def test_return_requires_delivered_order(paid_order, return_service):
    with pytest.raises(errors.StateTransitionError, match="delivered"):
        return_service.create_return(paid_order["id"], paid_order["items"][0]["id"], CUSTOMER.id, "Changed mind")


def test_return_after_deadline_fails(db, delivered_order, return_service):
    db.orders.update_one(
        {"_id": to_obj_id(delivered_order["id"])},
        {"$set": {"return_deadline": utcnow() - timedelta(seconds=1)}},
    )
    with pytest.raises(errors.StateTransitionError, match="expired"):
        return_service.create_return(delivered_order["id"], delivered_order["items"][0]["id"], CUSTOMER.id, "Late")


def test_second_return_for_same_item_conflicts(delivered_order, return_service):
    item_id = delivered_order["items"][0]["id"]
    return_service.create_return(delivered_order["id"], item_id, CUSTOMER.id, "Wrong colour")

    with pytest.raises(errors.ConflictError):
        return_service.create_return(delivered_order["id"], item_id, CUSTOMER.id, "Wrong colour again")


def test_unique_index_backs_duplicate_check(db, delivered_order, return_service):
    item_id = delivered_order["items"][0]["id"]
    return_service.create_return(delivered_order["id"], item_id, CUSTOMER.id, "Wrong colour")

    with pytest.raises(DuplicateKeyError):
        db.returns.insert_one({"order_id": delivered_order["id"], "order_item_id": item_id, "reason": "Race"})


def test_return_checks_ownership_and_item(delivered_order, paid_order, return_service, catalog, order_service):
    with pytest.raises(errors.AuthorizationError):
        return_service.create_return(delivered_order["id"], delivered_order["items"][0]["id"], OTHER_CUSTOMER.id, "x")

    shirt, _ = catalog
    other = order_service.create_order(CUSTOMER.id, [line(shirt, 1)], ADDRESS)
    with pytest.raises(errors.NotFoundError):
        return_service.create_return(delivered_order["id"], other["items"][0]["id"], CUSTOMER.id, "x")


def test_assign_return_once(delivered_order, return_service):
    ret = return_service.create_return(delivered_order["id"], delivered_order["items"][0]["id"], CUSTOMER.id, "x")
    return_service.assign(ret["id"], STAFF.id)

    with pytest.raises(errors.AlreadyAssignedError):
        return_service.assign(ret["id"], OTHER_STAFF.id)


def test_only_assignee_processes(delivered_order, return_service):
    ret = return_service.create_return(delivered_order["id"], delivered_order["items"][0]["id"], CUSTOMER.id, "x")

    with pytest.raises(errors.NotAssignedError):
        return_service.process(ret["id"], STAFF.id, "approved")
    return_service.assign(ret["id"], STAFF.id)
    with pytest.raises(errors.NotAssignedError):
        return_service.process(ret["id"], OTHER_STAFF.id, "approved")


def test_reject_records_notes_and_keeps_stock(db, delivered_order, return_service):
    item = delivered_order["items"][0]
    before = stock_qty(db, item["stock_id"])
    ret = return_service.create_return(delivered_order["id"], item["id"], CUSTOMER.id, "Worn")
    return_service.assign(ret["id"], STAFF.id)

    done = return_service.process(ret["id"], STAFF.id, "rejected", notes="Visible wear")

    assert done["status"] == "rejected"
    assert done["notes"] == "Visible wear"
    assert done["refund_amount"] is None
    assert stock_qty(db, item["stock_id"]) == before
    assert db.refunds.count_documents({}) == 0
    note = db.notifications.find_one({"type": "return"})
    assert "Visible wear" in note["message"]


def test_processed_return_cannot_be_processed_again(delivered_order, return_service):
    ret = return_service.create_return(delivered_order["id"], delivered_order["items"][0]["id"], CUSTOMER.id, "x")
    return_service.assign(ret["id"], STAFF.id)
    return_service.process(ret["id"], STAFF.id, "rejected")

    with pytest.raises(errors.AlreadyProcessedError):
        return_service.process(ret["id"], STAFF.id, "approved")


def test_failed_refund_leaves_return_pending_and_stock_untouched(db, delivered_order, return_service, gateway):
    item = item_for(delivered_order, 30.0)
    before = stock_qty(db, item["stock_id"])
    ret = return_service.create_return(delivered_order["id"], item["id"], CUSTOMER.id, "Too small")
    return_service.assign(ret["id"], STAFF.id)
    gateway.refunds_fail = True

    with pytest.raises(errors.ExternalServiceError):
        return_service.process(ret["id"], STAFF.id, "approved")

    stored = db.returns.find_one({"_id": to_obj_id(ret["id"])})
    assert stored["status"] == "pending"
    assert stock_qty(db, item["stock_id"]) == before
    assert db.refunds.count_documents({}) == 0

    gateway.refunds_fail = False
    assert return_service.process(ret["id"], STAFF.id, "approved")["status"] == "completed"


def test_approval_without_succeeded_payment_restocks_without_refund(db, catalog, order_service, return_service):
    shirt, _ = catalog
    order = order_service.create_order(CUSTOMER.id, [line(shirt, 3)], ADDRESS)
    order_service.update_status(order["id"], ADMIN, "processing")
    order_service.update_status(order["id"], ADMIN, "shipped")
    order_service.update_status(order["id"], ADMIN, "delivered")
    item = order["items"][0]
    ret = return_service.create_return(order["id"], item["id"], CUSTOMER.id, "Gift duplicate")
    return_service.assign(ret["id"], STAFF.id)

    done = return_service.process(ret["id"], STAFF.id, "approved")

    assert done["status"] == "completed"
    assert done["refund_amount"] == 30.0
    assert done["refund_id"] is None
    assert stock_qty(db, item["stock_id"]) == 20
    assert db.refunds.count_documents({}) == 0


def test_queues(delivered_order, return_service):
    ret = return_service.create_return(delivered_order["id"], delivered_order["items"][0]["id"], CUSTOMER.id, "x")
    assert [r["id"] for r in return_service.pending()] == [ret["id"]]
    assert [r["id"] for r in return_service.for_customer(CUSTOMER.id)] == [ret["id"]]

    return_service.assign(ret["id"], STAFF.id)
    assert return_service.pending() == []
    assert [r["id"] for r in return_service.assigned_to(STAFF.id)] == [ret["id"]]


def test_returning_every_item_refunds_each_and_closes_payment(db, delivered_order, return_service):
    done = []
    for item in delivered_order["items"]:
        ret = return_service.create_return(delivered_order["id"], item["id"], CUSTOMER.id, "Not as pictured")
        return_service.assign(ret["id"], STAFF.id)
        done.append(return_service.process(ret["id"], STAFF.id, "approved"))

    assert [r["status"] for r in done] == ["completed", "completed"]
    assert all(r["refund_id"] for r in done)
    refunds = sorted(r["amount"] for r in db.refunds.find({"order_id": delivered_order["id"]}))
    assert refunds == [20.0, 30.0]
    payment = db.payments.find_one({"order_id": delivered_order["id"], "status": "refunded"})
    assert payment["amount_refunded"] == 50.0
    assert db.orders.find_one({"_id": to_obj_id(delivered_order["id"])})["payment_status"] == "refunded"


def test_restock_failure_after_refund_leaves_return_approved(db, delivered_order, return_service, ledger, monkeypatch):
    item = item_for(delivered_order, 30.0)
    ret = return_service.create_return(delivered_order["id"], item["id"], CUSTOMER.id, "Too small")
    return_service.assign(ret["id"], STAFF.id)

    def stock_gone(stock_id, quantity):
        raise errors.NotFoundError("Stock not found")

    monkeypatch.setattr(ledger, "restore", stock_gone)
    with pytest.raises(errors.UnexpectedError):
        return_service.process(ret["id"], STAFF.id, "approved")

    stored = db.returns.find_one({"_id": to_obj_id(ret["id"])})
    assert stored["status"] == "approved"
    assert stored["refund_amount"] == 30.0
    assert stored["refund_id"].startswith("re_mock_")
    assert db.refunds.count_documents({}) == 1
