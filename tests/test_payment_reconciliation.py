import pytest

import notifications
from app import create_app
from conftest import KINGSTON_ADDRESS
from errors import ConflictError, UpstreamError, ValidationError
from orders import DeliveryDetails


@pytest.fixture
def place_card_order(workflow, buyer, seller, make_product, fill_cart):
    def _place(stock=10, price=100, quantity=2):
        product = make_product(seller, stock=stock, price=price)
        fill_cart(buyer, (product, quantity))
        order, payment = workflow.create_order(
            buyer["_id"],
            DeliveryDetails.from_payload(
                {"deliveryOption": "delivery", "shippingAddress": KINGSTON_ADDRESS}
            ),
            "card",
        )
        return order, payment, product

    return _place


def test_verified_payment_confirms_order(db, workflow, gateway, buyer, place_card_order, stock_of):
    order, payment, product = place_card_order()
    gateway.settle(payment["reference"], amount=700)

    paid = workflow.verify_payment(order["_id"], buyer["_id"])

    assert paid["payment_status"] == "paid"
    assert paid["status"] == "confirmed"
    assert paid["gateway_transaction_id"] == "wp_txn_1"
    assert paid["paid_at"] is not None
    assert [entry["status"] for entry in paid["status_history"]] == ["pending", "confirmed"]
    assert db.transactions.find_one({"order_id": order["_id"]})["status"] == "success"
    assert db.carts.find_one({"user_id": buyer["_id"]})["items"] == []
    # reserved when the order was placed, not again on payment
    assert stock_of(product) == 8


def test_verify_skips_gateway_for_paid_orders(workflow, gateway, buyer, place_card_order):
    order, payment, _ = place_card_order()
    gateway.settle(payment["reference"], amount=700)
    workflow.verify_payment(order["_id"], buyer["_id"])

    again = workflow.verify_payment(order["_id"], buyer["_id"])

    assert again["payment_status"] == "paid"
    assert gateway.verify_calls == [payment["reference"]]


def test_applying_success_twice_has_one_effect(
    db, workflow, buyer, place_card_order, fill_cart, stock_of
):
    order, _, product = place_card_order(stock=10, quantity=2)
    db.orders.update_one({"_id": order["_id"]}, {"$set": {"stock_reserved": False}})
    db.products.update_one({"_id": product["_id"]}, {"$set": {"stock": 10}})

    workflow.apply_payment_success(order)
    fill_cart(buyer, (product, 1))
    result = workflow.apply_payment_success(order)

    assert result["payment_status"] == "paid"
    assert stock_of(product) == 8
    assert db.carts.find_one({"user_id": buyer["_id"]})["item_count"] == 1
    stored = db.orders.find_one({"_id": order["_id"]})
    assert [entry["status"] for entry in stored["status_history"]] == ["pending", "confirmed"]
    assert db.audit_logs.count_documents({"action": "Recorded paid order"}) == 1


def test_failed_verification_keeps_order_pending(db, workflow, gateway, buyer, place_card_order, stock_of):
    order, payment, product = place_card_order()
    gateway.settle(payment["reference"], status="failed", amount=700)

    result = workflow.verify_payment(order["_id"], buyer["_id"])

    assert result["payment_status"] == "failed"
    assert result["status"] == "pending"
    assert db.transactions.find_one({"order_id": order["_id"]})["status"] == "failed"
    assert db.carts.find_one({"user_id": buyer["_id"]})["item_count"] == 2
    assert stock_of(product) == 8


def test_amount_mismatch_is_treated_as_failure(db, workflow, gateway, buyer, place_card_order):
    order, payment, _ = place_card_order()
    gateway.settle(payment["reference"], amount=650)

    result = workflow.verify_payment(order["_id"], buyer["_id"])

    assert result["payment_status"] == "failed"
    assert result["status"] == "pending"


def test_verify_is_noop_for_offline_orders(workflow, gateway, buyer, seller, make_product, fill_cart):
    fill_cart(buyer, (make_product(seller), 1))
    order, _ = workflow.create_order(
        buyer["_id"],
        DeliveryDetails.from_payload({"deliveryOption": "pickup"}),
        "bank_transfer",
    )

    result = workflow.verify_payment(order["_id"], buyer["_id"])

    assert result["payment_status"] == "pending"
    assert gateway.verify_calls == []


def test_verify_route_reports_gateway_outage(client, gateway, auth_headers, buyer, place_card_order):
    order, _, _ = place_card_order()
    gateway.fail_verify = True

    response = client.post(
        f"/api/v1/orders/{order['_id']}/verify-payment", json={}, headers=auth_headers(buyer)
    )

    assert response.status_code == 502
    assert response.get_json()["error"]["code"] == "PAYMENT_VERIFY_FAILED"


def test_verify_route_for_other_buyer_is_not_found(client, make_user, auth_headers, place_card_order):
    order, _, _ = place_card_order()
    stranger = make_user("buyer")

    response = client.post(
        f"/api/v1/orders/{order['_id']}/verify-payment", json={}, headers=auth_headers(stranger)
    )

    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "ORDER_NOT_FOUND"


def test_reference_of_another_order_is_refused(db, workflow, gateway, buyer, place_card_order):
    first, first_payment, _ = place_card_order()
    gateway.settle(first_payment["reference"], amount=700)
    workflow.verify_payment(first["_id"], buyer["_id"])
    second, second_payment, _ = place_card_order()

    with pytest.raises(ValidationError) as excinfo:
        workflow.verify_payment(second["_id"], buyer["_id"], first_payment["reference"])

    assert excinfo.value.code == "INVALID_REFERENCE"
    stored = db.orders.find_one({"_id": second["_id"]})
    assert stored["payment_status"] == "pending"
    assert stored["status"] == "pending"
    assert db.transactions.find_one({"payment_reference": second_payment["reference"]})["status"] == "pending"
    assert gateway.verify_calls == [first_payment["reference"]]


def test_verify_accepts_the_orders_gateway_transaction_id(workflow, gateway, buyer, place_card_order):
    order, payment, _ = place_card_order()
    gateway.settle(payment["reference"], amount=700)

    paid = workflow.verify_payment(order["_id"], buyer["_id"], payment["transactionId"])

    assert paid["payment_status"] == "paid"
    assert gateway.verify_calls == [payment["reference"]]


def test_verify_route_rejects_foreign_reference(client, auth_headers, buyer, place_card_order):
    order, _, _ = place_card_order()

    response = client.post(
        f"/api/v1/orders/{order['_id']}/verify-payment",
        json={"reference": "WPREF-404"},
        headers=auth_headers(buyer),
    )

    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "INVALID_REFERENCE"


def test_payment_for_cancelled_order_leaves_stock_alone(
    workflow, gateway, buyer, place_card_order, stock_of
):
    order, payment, product = place_card_order()
    workflow.cancel_order(order["_id"], buyer["_id"])
    assert stock_of(product) == 10
    gateway.settle(payment["reference"], amount=700)

    result = workflow.verify_payment(order["_id"], buyer["_id"])

    assert result["payment_status"] == "paid"
    assert result["status"] == "cancelled"
    assert stock_of(product) == 10


def test_payment_for_cancelled_order_keeps_new_cart_and_flags_refund(
    db, workflow, gateway, buyer, seller, make_product, fill_cart, place_card_order
):
    order, payment, _ = place_card_order()
    workflow.cancel_order(order["_id"], buyer["_id"])
    workflow.carts.clear(buyer["_id"])
    fill_cart(buyer, (make_product(seller, title="Otaheite Apple"), 3))
    gateway.settle(payment["reference"], amount=700)

    workflow.verify_payment(order["_id"], buyer["_id"])

    assert db.carts.find_one({"user_id": buyer["_id"]})["item_count"] == 3
    flagged = db.audit_logs.find_one({"action": "Paid after cancellation"})
    assert flagged["metadata"]["order_number"] == order["order_number"]
    assert flagged["metadata"]["follow_up"] == "refund"
    assert db.audit_logs.count_documents({"action": "Recorded paid order"}) == 0


def test_retry_after_failed_payment_starts_new_attempt(
    db, workflow, gateway, buyer, place_card_order, stock_of
):
    order, payment, product = place_card_order()
    gateway.settle(payment["reference"], status="failed")
    workflow.verify_payment(order["_id"], buyer["_id"])

    retried, new_payment = workflow.retry_payment(order["_id"], buyer["_id"])

    assert new_payment["reference"] == "WPREF-2"
    assert retried["payment_reference"] == "WPREF-2"
    assert retried["payment_status"] == "pending"
    statuses = sorted(t["status"] for t in db.transactions.find({"order_id": order["_id"]}))
    assert statuses == ["failed", "pending"]
    assert stock_of(product) == 8

    gateway.settle("WPREF-2", amount=700)
    paid = workflow.verify_payment(order["_id"], buyer["_id"])
    assert paid["payment_status"] == "paid"


def test_retry_reserves_stock_after_failed_initialisation(
    db, workflow, gateway, buyer, seller, make_product, fill_cart, stock_of
):
    product = make_product(seller, stock=5, price=100)
    fill_cart(buyer, (product, 2))
    gateway.fail_create = True
    with pytest.raises(UpstreamError):
        workflow.create_order(
            buyer["_id"],
            DeliveryDetails.from_payload(
                {"deliveryOption": "delivery", "shippingAddress": KINGSTON_ADDRESS}
            ),
            "card",
        )
    order = db.orders.find_one({"buyer_id": buyer["_id"]})
    assert stock_of(product) == 5

    gateway.fail_create = False
    retried, payment = workflow.retry_payment(order["_id"], buyer["_id"])

    assert payment["reference"] == "WPREF-1"
    assert retried["stock_reserved"] is True
    assert stock_of(product) == 3


def test_paid_orders_cannot_be_retried(workflow, gateway, buyer, place_card_order):
    order, payment, _ = place_card_order()
    gateway.settle(payment["reference"], amount=700)
    workflow.verify_payment(order["_id"], buyer["_id"])

    with pytest.raises(ConflictError) as excinfo:
        workflow.retry_payment(order["_id"], buyer["_id"])
    assert excinfo.value.code == "PAYMENT_NOT_RETRYABLE"


def test_retry_route(client, gateway, auth_headers, buyer, place_card_order):
    order, payment, _ = place_card_order()
    gateway.settle(payment["reference"], status="failed")
    headers = auth_headers(buyer)
    client.post(f"/api/v1/orders/{order['_id']}/verify-payment", json={}, headers=headers)

    response = client.post(f"/api/v1/orders/{order['_id']}/retry-payment", headers=headers)

    body = response.get_json()
    assert response.status_code == 200
    assert body["data"]["payment"]["paymentUrl"] == "https://sandbox.wipay.com/pay/2"
    assert body["data"]["order"]["paymentStatus"] == "pending"


def test_paid_order_sends_confirmation_email(
    db, gateway, app_config, buyer, seller, make_product, monkeypatch
):
    sent = []

    def fake_send(payload):
        sent.append(payload)
        return {"id": "email_1"}

    monkeypatch.setattr(notifications.resend.Emails, "send", fake_send)
    app = create_app(config={**app_config, "RESEND_API_KEY": "re_test"}, db=db, gateway=gateway)
    workflow = app.extensions["order_workflow"]
    product = make_product(seller, price=100, title="Blue Mountain Coffee")
    workflow.carts.add_item(buyer["_id"], product["_id"], 1)
    order, payment = workflow.create_order(
        buyer["_id"],
        DeliveryDetails.from_payload({"deliveryOption": "delivery", "shippingAddress": KINGSTON_ADDRESS}),
        "card",
    )
    gateway.settle(payment["reference"], amount=600)

    with app.test_request_context():
        workflow.verify_payment(order["_id"], buyer["_id"])

    assert len(sent) == 1
    assert sent[0]["to"] == ["buyer@example.jm"]
    assert order["order_number"] in sent[0]["subject"]
    assert "Blue Mountain Coffee" in sent[0]["html"]
