"""Unit tests for the outbound HTTP clients (Stripe and notifications).

Requests are answered by an ``httpx.MockTransport`` so nothing leaves the
process.
"""

import uuid
from urllib.parse import parse_qs

import httpx
import pytest
from services.store_service.errors import PaymentProcessorError
from services.store_service.payment_gateway import StripeGateway
from services.store_service.payment_gateway.signatures import sign_payload
from services.store_service.services.notifications import NotificationClient

_RealAsyncClient = httpx.AsyncClient


def _mock_http(monkeypatch, handler):
    """Route every httpx.AsyncClient created during the test through ``handler``."""
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(recording)
        return _RealAsyncClient(*args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)
    return requests


def _stripe() -> StripeGateway:
    return StripeGateway(
        secret_key="sk_test_unit",
        webhook_secret="whsec_unit",
        api_base="https://stripe.test/v1",
    )


# ---------------------------------------------------------------------------
# StripeGateway
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_create_charge_sends_form_body(monkeypatch):
    """Amount, currency, metadata and idempotency key all reach Stripe."""
    requests = _mock_http(
        monkeypatch,
        lambda request: httpx.Response(
            200,
            json={
                "id": "pi_123",
                "status": "requires_payment_method",
                "amount": 1210,
                "currency": "eur",
                "client_secret": "pi_123_secret",
                "metadata": {"order_id": "abc"},
            },
        ),
    )

    intent = await _stripe().create_charge(1210, "EUR", {"order_id": "abc"}, "key-1")

    assert intent.id == "pi_123"
    assert intent.client_secret == "pi_123_secret"
    assert intent.metadata == {"order_id": "abc"}

    sent = requests[0]
    assert sent.method == "POST"
    assert str(sent.url) == "https://stripe.test/v1/payment_intents"
    assert sent.headers["Authorization"] == "Bearer sk_test_unit"
    assert sent.headers["Idempotency-Key"] == "key-1"
    form = parse_qs(sent.content.decode())
    assert form["amount"] == ["1210"]
    assert form["currency"] == ["eur"]
    assert form["metadata[order_id]"] == ["abc"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_error_becomes_processor_error(monkeypatch):
    _mock_http(
        monkeypatch,
        lambda request: httpx.Response(
            402, json={"error": {"message": "Your card was declined."}}
        ),
    )

    with pytest.raises(PaymentProcessorError) as exc_info:
        await _stripe().retrieve_charge("pi_declined")

    assert exc_info.value.status_code == 502
    assert "declined" not in exc_info.value.message


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_unreachable_becomes_processor_error(monkeypatch):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    _mock_http(monkeypatch, refuse)

    with pytest.raises(PaymentProcessorError):
        await _stripe().retrieve_charge("pi_any")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_retrieve_charge_escapes_the_id(monkeypatch):
    """A charge id from the client stays one path segment."""
    requests = _mock_http(
        monkeypatch,
        lambda request: httpx.Response(
            200,
            json={
                "id": "pi_1",
                "status": "succeeded",
                "amount": 100,
                "currency": "eur",
            },
        ),
    )

    await _stripe().retrieve_charge("pi_1/../../customers?limit=1")

    sent = requests[0]
    assert sent.method == "GET"
    assert sent.url.raw_path == (
        b"/v1/payment_intents/pi_1%2F..%2F..%2Fcustomers%3Flimit%3D1"
    )
    assert "limit" not in sent.url.params


@pytest.mark.unit
def test_stripe_construct_event_verifies_signature():
    payload = (
        b'{"id": "evt_9", "type": "payment_intent.succeeded", "data": {"object": '
        b'{"id": "pi_9", "amount": 500, "currency": "eur", "metadata": {}}}}'
    )
    signature = sign_payload(payload, "whsec_unit")

    event = _stripe().construct_event(payload, signature)

    assert event.id == "evt_9"
    assert event.charge.amount_minor == 500


# ---------------------------------------------------------------------------
# NotificationClient
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_notification_posts_template_request(monkeypatch):
    requests = _mock_http(monkeypatch, lambda request: httpx.Response(200, json={}))
    order_id = uuid.uuid4()

    sent = await NotificationClient(base_url="http://comms.test/").send(
        "order_confirmation",
        order_id,
        to_email="buyer@example.com",
        template_data={"total": "12.10"},
    )

    assert sent is True
    request = requests[0]
    assert str(request.url) == "http://comms.test/email/template"
    assert request.headers["Authorization"].startswith("Bearer ")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_notification_failures_return_false(monkeypatch):
    """Errors are reported, never raised."""
    _mock_http(monkeypatch, lambda request: httpx.Response(503))
    client = NotificationClient(base_url="http://comms.test")

    failed = await client.send("order_confirmation", uuid.uuid4(), to_email="a@b.co")
    skipped = await client.send("order_confirmation", uuid.uuid4(), to_email=None)

    assert failed is False
    assert skipped is False
