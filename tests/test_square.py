import json

from boxoffice.intents import (
    MultiRegistrationIntent, MultiRegistrationItem, RegistrationIntent,
)
from boxoffice.model.db import Event
from boxoffice.payments.signatures import construct_url_event

from .conftest import SQUARE_SIGNATURE_KEY

BASE = "https://tickets.example.com"
HOOK_URL = "https://tickets.example.com/payment/webhook"


def paid_event():
    return Event(id=5, slug="tour", name="Tour", unit_price=2000,
                 max_quantity=4, event_type="standard")


def payment_updated(order_id, status="COMPLETED"):
    return {
        "merchant_id": "M1",
        "type": "payment.updated",
        "event_id": "sq_evt_1",
        "data": {"type": "payment", "id": "p1", "object": {"payment": {
            "id": f"pay_{order_id}", "order_id": order_id, "status": status,
        }}},
    }


async def test_create_payment_link(square, fake_square):
    intent = RegistrationIntent(5, "Ann", "ann@example.com", quantity=2,
                                phone="07700 900123")
    result = await square.create_checkout_session(paid_event(), intent, BASE)
    assert result == {
        "session_id": "order_1",
        "checkout_url": "https://square.link/u/order_1",
    }
    (body,) = fake_square.links
    assert body["order"]["location_id"] == "LOC1"
    (item,) = body["order"]["line_items"]
    assert item["name"] == "Ticket: Tour"
    assert item["quantity"] == "2"
    assert item["base_price_money"] == {"amount": 2000, "currency": "EUR"}
    assert body["order"]["metadata"]["event_id"] == "5"
    assert body["checkout_options"]["redirect_url"] == (
        f"{BASE}/payment/success"
    )
    assert body["pre_populated_data"] == {
        "buyer_email": "ann@example.com",
        "buyer_phone_number": "+447700900123",
    }
    request = fake_square.requests[0]
    assert request.headers["authorization"] == "Bearer sq_token"
    assert request.headers["square-version"]


async def test_missing_location_id(env, square, fake_square):
    del env["SQUARE_LOCATION_ID"]
    intent = RegistrationIntent(5, "Ann", "ann@example.com")
    assert await square.create_checkout_session(
        paid_event(), intent, BASE
    ) is None
    assert fake_square.requests == []


async def test_metadata_overflow_never_reaches_gateway(square, fake_square):
    intent = MultiRegistrationIntent(
        name="Ann", email="ann@example.com",
        items=[MultiRegistrationItem(i, 1, 100, f"E{i}")
               for i in range(1, 40)],
    )
    assert await square.create_multi_checkout_session(intent, BASE) is None
    assert fake_square.requests == []


async def test_multi_payment_link(square, fake_square):
    intent = MultiRegistrationIntent(
        name="Ann", email="ann@example.com",
        items=[MultiRegistrationItem(1, 1, 500, "A"),
               MultiRegistrationItem(2, 2, 2000, "B")],
    )
    result = await square.create_multi_checkout_session(intent, BASE)
    assert result["session_id"] == "order_1"
    order = fake_square.orders["order_1"]
    assert order["total_money"]["amount"] == 4500
    assert json.loads(order["metadata"]["items"]) == [
        {"e": 1, "q": 1}, {"e": 2, "q": 2},
    ]


async def test_retrieve_order(square, fake_square):
    intent = RegistrationIntent(5, "Ann", "ann@example.com")
    await square.create_checkout_session(paid_event(), intent, BASE)
    session = await square.retrieve_session("order_1")
    assert session.payment_status == "unpaid"

    payment_id = fake_square.pay("order_1")
    session = await square.retrieve_session("order_1")
    assert session.is_paid
    assert session.payment_reference == payment_id
    assert session.amount_total == 2000
    assert session.metadata["email"] == "ann@example.com"

    fake_square.orders["order_1"]["state"] = "CANCELED"
    assert (await square.retrieve_session("order_1")).payment_status == (
        "failed"
    )
    assert await square.retrieve_session("order_404") is None


async def test_refund(square, fake_square):
    intent = RegistrationIntent(5, "Ann", "ann@example.com", quantity=3)
    await square.create_checkout_session(paid_event(), intent, BASE)
    payment_id = fake_square.pay("order_1")
    assert await square.refund_payment(payment_id)
    (refund,) = fake_square.refunds
    assert refund["payment_id"] == payment_id
    assert refund["amount_money"] == {"amount": 6000, "currency": "EUR"}
    assert refund["idempotency_key"]
    assert not await square.refund_payment("pay_unknown")


async def test_verify_webhook_binds_notification_url(square):
    body, header = construct_url_event(
        payment_updated("order_1"), SQUARE_SIGNATURE_KEY, HOOK_URL
    )
    result = await square.verify_webhook_signature(
        body, header, {"notification_url": HOOK_URL}
    )
    assert result.valid
    assert square.session_id_from_event(result.event) == "order_1"

    wrong = await square.verify_webhook_signature(
        body, header, {"notification_url": BASE + "/other"}
    )
    assert not wrong.valid


def test_session_id_only_for_completed_payments(square):
    assert square.session_id_from_event(
        payment_updated("order_1", status="APPROVED")
    ) is None
    created = payment_updated("order_1")
    created["type"] = "payment.created"
    assert square.session_id_from_event(created) is None


async def test_webhook_endpoint_is_configured_by_hand(square, fake_square):
    result = await square.setup_webhook_endpoint(
        "sq_token", "https://tickets.example.com/payment/webhook"
    )
    assert not result.success
    assert "Square Developer Dashboard" in result.error
    assert fake_square.requests == []
