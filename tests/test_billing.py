from urllib.parse import parse_qsl

import httpx
import pytest

from tenantgate.service.billing import BillingService, encode_form
from tenantgate.service.errors import BillingError


def _billing(settings, handler, **overrides):
    configured = settings.model_copy(
        update={"stripe_secret_key": "sk_test_123", **overrides}
    )
    return BillingService(configured, transport=httpx.MockTransport(handler))


def test_encode_form_flattens_nested_values():
    pairs = encode_form(
        {
            "customer": "cus_1",
            "metadata": {"plan": "pro"},
            "line_items": [{"price": "price_1", "quantity": 1}],
            "skip": None,
            "flag": True,
        }
    )

    assert pairs == [
        ("customer", "cus_1"),
        ("metadata[plan]", "pro"),
        ("line_items[0][price]", "price_1"),
        ("line_items[0][quantity]", "1"),
        ("flag", "true"),
    ]


async def test_create_customer_posts_form_with_bearer_key(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["form"] = dict(parse_qsl(request.content.decode()))
        return httpx.Response(200, json={"id": "cus_1", "email": "ada@example.com"})

    billing = _billing(settings, handler)
    customer = await billing.create_customer("ada@example.com")

    assert customer == {"id": "cus_1", "email": "ada@example.com"}
    assert seen == {
        "method": "POST",
        "path": "/v1/customers",
        "auth": "Bearer sk_test_123",
        "form": {"email": "ada@example.com"},
    }


async def test_checkout_session_uses_subscription_mode(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["form"] = dict(parse_qsl(request.content.decode()))
        return httpx.Response(200, json={"id": "cs_1", "url": "https://pay"})

    billing = _billing(settings, handler)
    session = await billing.create_checkout_session(
        "cus_1", "price_1", "https://ok", "https://cancel"
    )

    assert session["url"] == "https://pay"
    assert seen["path"] == "/v1/checkout/sessions"
    assert seen["form"]["mode"] == "subscription"
    assert seen["form"]["line_items[0][price]"] == "price_1"
    assert seen["form"]["line_items[0][quantity]"] == "1"


async def test_get_and_delete_use_query_free_requests(settings):
    methods = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append((request.method, request.url.path, request.content))
        return httpx.Response(200, json={"id": "cus_1", "deleted": request.method == "DELETE"})

    billing = _billing(settings, handler)
    await billing.get_customer("cus_1")
    deleted = await billing.delete_customer("cus_1")

    assert methods == [
        ("GET", "/v1/customers/cus_1", b""),
        ("DELETE", "/v1/customers/cus_1", b""),
    ]
    assert deleted["deleted"] is True


async def test_provider_error_message_is_surfaced(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            404,
            json={"error": {"message": "No such customer: 'cus_x'", "code": "resource_missing"}},
        )

    billing = _billing(settings, handler)
    with pytest.raises(BillingError) as excinfo:
        await billing.get_customer("cus_x")

    assert excinfo.value.message == "No such customer: 'cus_x'"
    assert excinfo.value.status_code == 502
    assert excinfo.value.detail == {"provider_status": 404, "provider_code": "resource_missing"}


async def test_transport_failure_is_wrapped(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    billing = _billing(settings, handler)
    with pytest.raises(BillingError) as excinfo:
        await billing.create_customer("ada@example.com")
    assert excinfo.value.message == "payment provider unavailable"


async def test_unconfigured_billing_fails_without_calling_out(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    billing = BillingService(settings, transport=httpx.MockTransport(handler))
    assert billing.configured is False
    with pytest.raises(BillingError) as excinfo:
        await billing.create_customer("ada@example.com")
    assert excinfo.value.message == "billing is not configured"
