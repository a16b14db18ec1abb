import httpx

from boxoffice.intents import (
    MultiRegistrationIntent, MultiRegistrationItem, RegistrationIntent,
)
from boxoffice.model.db import EVENT_TYPE_DAILY, Event
from boxoffice.payments.signatures import construct_timestamped_event
from boxoffice.payments.stripe import StripeProvider

from .conftest import STRIPE_WEBHOOK_SECRET

BASE = "https://tickets.example.com"


def paid_event(**kw):
    kw.setdefault("event_type", "standard")
    return Event(id=3, slug="gig", name="Gig", unit_price=1500,
                 max_quantity=4, **kw)


async def test_create_checkout_session(stripe, fake_stripe):
    intent = RegistrationIntent(3, "Ann", "ann@example.com", quantity=2)
    result = await stripe.create_checkout_session(paid_event(), intent, BASE)
    assert result == {
        "session_id": "cs_test_1",
        "checkout_url": "https://checkout.stripe.test/cs_test_1",
    }
    form = fake_stripe.forms["cs_test_1"]
    assert form["mode"] == "payment"
    assert form["customer_email"] == "ann@example.com"
    assert form["line_items[0][price_data][currency]"] == "eur"
    assert form["line_items[0][price_data][unit_amount]"] == "1500"
    assert form["line_items[0][quantity]"] == "2"
    assert form["metadata[event_id]"] == "3"
    assert form["success_url"] == (
        f"{BASE}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"
    )
    auth = fake_stripe.requests[0].headers["authorization"]
    assert auth == "Bearer sk_test_123"


async def test_free_event_has_no_session(stripe, fake_stripe):
    event = Event(id=1, slug="free", name="Free", unit_price=None)
    intent = RegistrationIntent(1, "Ann", "ann@example.com")
    assert await stripe.create_checkout_session(event, intent, BASE) is None
    assert fake_stripe.requests == []


async def test_metadata_overflow_never_reaches_gateway(stripe, fake_stripe):
    intent = RegistrationIntent(3, "Ann", "a" * 600 + "@example.com")
    assert await stripe.create_checkout_session(
        paid_event(), intent, BASE
    ) is None
    assert fake_stripe.requests == []


async def test_long_name_is_truncated(stripe, fake_stripe):
    intent = RegistrationIntent(3, "n" * 700, "ann@example.com")
    assert await stripe.create_checkout_session(paid_event(), intent, BASE)
    assert fake_stripe.forms["cs_test_1"]["metadata[name]"] == "n" * 500


async def test_gateway_rejection_returns_none(stripe, fake_stripe):
    fake_stripe.fail_create = True
    intent = RegistrationIntent(3, "Ann", "ann@example.com")
    assert await stripe.create_checkout_session(
        paid_event(), intent, BASE
    ) is None


async def test_missing_secret_key(credentials, env, stripe, fake_stripe):
    del env["STRIPE_SECRET_KEY"]
    intent = RegistrationIntent(3, "Ann", "ann@example.com")
    assert await stripe.create_checkout_session(
        paid_event(), intent, BASE
    ) is None
    assert fake_stripe.requests == []


async def test_multi_session_charges_paid_items_only(stripe, fake_stripe):
    intent = MultiRegistrationIntent(
        name="Ann", email="ann@example.com",
        items=[MultiRegistrationItem(1, 1, 500, "A"),
               MultiRegistrationItem(2, 2, 0, "Free"),
               MultiRegistrationItem(3, 2, 2000, "B")],
    )
    result = await stripe.create_multi_checkout_session(intent, BASE)
    assert result["session_id"] == "cs_test_1"
    form = fake_stripe.forms["cs_test_1"]
    assert form["line_items[0][price_data][product_data][name]"] == "A"
    assert form["line_items[1][price_data][product_data][name]"] == "B"
    assert "line_items[2][quantity]" not in form
    assert form["metadata[multi]"] == "1"
    assert form["metadata[items]"] == (
        '[{"e":1,"q":1},{"e":2,"q":2},{"e":3,"q":2}]'
    )
    assert fake_stripe.sessions["cs_test_1"]["amount_total"] == 4500


async def test_retrieve_session_status(stripe, fake_stripe):
    intent = RegistrationIntent(3, "Ann", "ann@example.com", date="2026-05-01")
    await stripe.create_checkout_session(
        paid_event(event_type=EVENT_TYPE_DAILY), intent, BASE
    )
    session = await stripe.retrieve_session("cs_test_1")
    assert session.payment_status == "unpaid"
    assert not session.is_paid
    assert session.payment_reference is None

    pi = fake_stripe.pay("cs_test_1")
    session = await stripe.retrieve_session("cs_test_1")
    assert session.is_paid
    assert session.payment_reference == pi
    assert session.amount_total == 1500
    assert session.metadata["date"] == "2026-05-01"
    assert not session.is_multi

    fake_stripe.sessions["cs_test_1"]["status"] = "expired"
    fake_stripe.sessions["cs_test_1"]["payment_status"] = "unpaid"
    session = await stripe.retrieve_session("cs_test_1")
    assert session.payment_status == "failed"


async def test_no_payment_required_is_not_paid(stripe, fake_stripe):
    intent = RegistrationIntent(3, "Ann", "ann@example.com")
    await stripe.create_checkout_session(paid_event(), intent, BASE)
    fake_stripe.sessions["cs_test_1"].update(
        status="complete", payment_status="no_payment_required"
    )
    session = await stripe.retrieve_session("cs_test_1")
    assert session.payment_status == "unpaid"
    assert not session.is_paid


async def test_retrieve_unknown_or_unlabelled_session(stripe, fake_stripe):
    assert await stripe.retrieve_session("cs_missing") is None
    fake_stripe.sessions["cs_bare"] = {
        "id": "cs_bare", "payment_status": "paid", "metadata": {},
    }
    assert await stripe.retrieve_session("cs_bare") is None


async def test_refund_uses_captured_amount(stripe, fake_stripe):
    intent = RegistrationIntent(3, "Ann", "ann@example.com", quantity=2)
    await stripe.create_checkout_session(paid_event(), intent, BASE)
    pi = fake_stripe.pay("cs_test_1")
    assert await stripe.refund_payment(pi)
    (refund,) = fake_stripe.refunds
    assert refund["payment_intent"] == pi
    assert refund["amount"] == "3000"
    assert refund["idempotency_key"] == f"refund-{pi}"


async def test_refund_failures_return_false(stripe, fake_stripe):
    assert not await stripe.refund_payment("pi_unknown")
    await stripe.create_checkout_session(
        paid_event(), RegistrationIntent(3, "Ann", "ann@example.com"), BASE
    )
    pi = fake_stripe.pay("cs_test_1")
    fake_stripe.fail_refund = True
    assert not await stripe.refund_payment(pi)


async def test_client_rebuilt_after_key_rotation(credentials, stripe,
                                                 fake_stripe):
    intent = RegistrationIntent(3, "Ann", "ann@example.com")
    await stripe.create_checkout_session(paid_event(), intent, BASE)
    await credentials.set("STRIPE_SECRET_KEY", "sk_test_rotated")
    await stripe.create_checkout_session(paid_event(), intent, BASE)
    headers = [r.headers["authorization"] for r in fake_stripe.requests]
    assert headers == ["Bearer sk_test_123", "Bearer sk_test_rotated"]
    await stripe.close()


async def test_verify_webhook_and_session_id(stripe):
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_test_9"}},
    }
    body, header = construct_timestamped_event(event, STRIPE_WEBHOOK_SECRET)
    result = await stripe.verify_webhook_signature(body, header)
    assert result.valid
    assert stripe.session_id_from_event(result.event) == "cs_test_9"

    bad = await stripe.verify_webhook_signature(body, header + "0")
    assert not bad.valid


def test_session_id_from_other_events(stripe):
    assert stripe.session_id_from_event({
        "id": "evt", "type": "payment_intent.created",
        "data": {"object": {"id": "pi_1"}},
    }) is None
    assert stripe.session_id_from_event({
        "id": "evt", "type": "checkout.session.async_payment_succeeded",
        "data": {"object": {"id": "cs_2"}},
    }) == "cs_2"
    assert stripe.session_id_from_event({
        "id": "evt", "type": "checkout.session.completed", "data": {},
    }) is None


async def test_settings_change_during_refund(credentials, fake_stripe):
    async def handler(request):
        if request.url.path.startswith("/v1/payment_intents/"):
            # an admin saves a setting while the refund is in flight
            await provider.reset()
        return fake_stripe.handler(request)

    provider = StripeProvider(
        credentials,
        transport=httpx.MockTransport(handler),
        api_base="https://stripe.test",
    )
    intent = RegistrationIntent(3, "Ann", "ann@example.com")
    await provider.create_checkout_session(paid_event(), intent, BASE)
    pi = fake_stripe.pay("cs_test_1")
    assert await provider.refund_payment(pi)
    assert len(fake_stripe.refunds) == 1
    # a fresh client serves the next call
    assert await provider.retrieve_session("cs_test_1")
    await provider.close()


async def test_setup_webhook_endpoint(stripe, fake_stripe):
    url = "https://tickets.example.com/payment/webhook"
    result = await stripe.setup_webhook_endpoint("sk_live_new", url)
    assert result.success
    endpoint = fake_stripe.webhook_endpoints[result.endpoint_id]
    assert result.secret == endpoint["secret"]
    assert endpoint["url"] == url
    assert endpoint["enabled_events"] == [
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    ]
    # the key being saved, not the stored one
    assert endpoint["api_key"] == "Bearer sk_live_new"


async def test_setup_webhook_endpoint_replaces_existing(stripe, fake_stripe):
    url = "https://tickets.example.com/payment/webhook"
    first = await stripe.setup_webhook_endpoint("sk_live_new", url)
    second = await stripe.setup_webhook_endpoint(
        "sk_live_new", url, first.endpoint_id
    )
    assert second.success
    assert list(fake_stripe.webhook_endpoints) == [second.endpoint_id]
    # an endpoint deleted on the dashboard is not an error
    third = await stripe.setup_webhook_endpoint("sk_live_new", url, "we_gone")
    assert third.success


async def test_setup_webhook_endpoint_rejected(stripe, fake_stripe):
    fake_stripe.fail_webhook_setup = True
    result = await stripe.setup_webhook_endpoint(
        "sk_bad", "https://tickets.example.com/payment/webhook"
    )
    assert not result.success
    assert result.secret is None
    assert result.error
