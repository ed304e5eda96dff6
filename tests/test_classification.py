import json

import httpx
import pytest

from venue.receipts.classification import ReceiptClassifier, calculate_cost, record_ai_usage, ClassificationUsage

from .conftest import SLUG


def _reply(content, usage=None, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        payload = {"choices": [{"message": {"content": content}}]}
        if usage is not None:
            payload["usage"] = usage
        return httpx.Response(status, json=payload)

    return handler


def _classifier(handler, **kwargs):
    return ReceiptClassifier(
        api_key="sk-test",
        base_url="https://llm.example/v1/",
        model="gpt-4o-mini",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


async def test_classify_parses_structured_reply():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        content = json.dumps({
            "vendor_name": "Booker Wholesale",
            "expense_category": "FOOD STOCK",
            "reasoning": "  Cash and carry  ",
            "confidence": 87.6,
            "suggested_rule_keywords": "booker",
        })
        return httpx.Response(200, json={
            "model": "gpt-4o-mini",
            "choices": [{"message": {"content": content}}],
            "usage": {"prompt_tokens": 2000, "completion_tokens": 1000},
        })

    outcome = await _classifier(handler).classify("BOOKER LTD", amount_out=64.2, transaction_type="DEB")

    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["response_format"]["type"] == "json_schema"
    assert "Amount: £64.20" in seen["body"]["messages"][1]["content"]

    assert outcome.result.vendor_name == "Booker Wholesale"
    assert outcome.result.expense_category == "Food Stock"
    assert outcome.result.reasoning == "Cash and carry"
    assert outcome.result.confidence == 88
    assert outcome.usage.total_tokens == 3000
    assert outcome.usage.cost == pytest.approx(0.0009)


async def test_unknown_category_and_bad_confidence_are_dropped():
    content = json.dumps({"vendor_name": "", "expense_category": "Groceries", "confidence": 140})

    outcome = await _classifier(_reply(content)).classify("SOMETHING")

    assert outcome.result.vendor_name is None
    assert outcome.result.expense_category is None
    assert outcome.result.confidence is None
    assert outcome.usage is None


@pytest.mark.parametrize(
    "handler",
    [
        _reply("{}", status=500),
        _reply("not json"),
        _reply(""),
        _reply(json.dumps(["a", "list"])),
    ],
)
async def test_failures_degrade_to_none(handler):
    assert await _classifier(handler).classify("BOOKER LTD", amount_out=10.0) is None


def _payload(payload):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    return handler


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        "just a string",
        {"choices": "nope"},
        {"choices": ["a string choice"]},
        {"choices": [{"message": "flat text"}]},
        {"choices": [None]},
        {"choices": []},
    ],
)
async def test_malformed_payload_shapes_degrade_to_none(payload):
    assert await _classifier(_payload(payload)).classify("BOOKER LTD", amount_out=10.0) is None


async def test_unreadable_usage_is_ignored():
    content = json.dumps({"vendor_name": "Booker", "expense_category": None})
    handler = _reply(content, usage={"prompt_tokens": "lots", "completion_tokens": None})

    outcome = await _classifier(handler).classify("BOOKER LTD")

    assert outcome.result.vendor_name == "Booker"
    assert outcome.usage is None


async def test_transport_error_degrades_to_none():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert await _classifier(handler).classify("BOOKER LTD") is None


async def test_disabled_classifier_never_calls_out():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    classifier = ReceiptClassifier(api_key="", transport=httpx.MockTransport(handler))

    assert classifier.enabled is False
    assert await classifier.classify("BOOKER LTD") is None
    assert calls == []


def test_calculate_cost_falls_back_to_default_pricing():
    assert calculate_cost("gpt-4o", 1000, 1000) == pytest.approx(0.0125)
    assert calculate_cost("some-new-model", 1000, 1000) == calculate_cost("gpt-4o-mini", 1000, 1000)


async def test_record_ai_usage(db, tenant):
    usage = ClassificationUsage(model="gpt-4o-mini", prompt_tokens=10, completion_tokens=5, total_tokens=15, cost=0.00001)

    await record_ai_usage(db, SLUG, usage, "receipt_group:abc")
    await record_ai_usage(db, SLUG, None, "receipt_group:abc")

    rows = await tenant("ai_usage_events").find({}).to_list(None)
    assert len(rows) == 1
    assert rows[0]["context"] == "receipt_group:abc"
    assert rows[0]["model"] == "gpt-4o-mini"
