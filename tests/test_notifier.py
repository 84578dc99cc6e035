import asyncio
import json

import httpx

from services.webhooks.notifier import STREAM_START, WebhookNotifier
from shared.config.recorder import WebhookConfig


def test_send_posts_envelope_with_bearer_secret():
    captured = {}

    def handler(request):
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = WebhookNotifier(
                WebhookConfig(url="https://hooks.example.com/rec", secret="s3cret"),
                "server-1",
                client=client,
            )
            return await notifier.send(STREAM_START, {"name": "alpha"})

    result = asyncio.run(run())

    assert result.ok is True
    assert result.status_code == 200
    assert captured["auth"] == "Bearer s3cret"
    body = captured["body"]
    assert body["type"] == "streamStart"
    assert body["payload"] == {"name": "alpha"}
    assert body["server"] == "server-1"
    assert body["time"].endswith("Z")


def test_send_without_url_is_skipped():
    notifier = WebhookNotifier(WebhookConfig(url=""), "server-1")
    result = asyncio.run(notifier.send(STREAM_START, {}))
    assert result.ok is False
    assert result.skipped is True
    assert notifier.fire(STREAM_START, {}) is None


def test_send_failures_are_returned_not_raised():
    def rejecting(request):
        return httpx.Response(500)

    def failing(request):
        raise httpx.ConnectError("down", request=request)

    async def run(handler):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = WebhookNotifier(WebhookConfig(url="https://hooks.example.com"), "s", client=client)
            return await notifier.send(STREAM_START, {})

    rejected = asyncio.run(run(rejecting))
    assert rejected.ok is False
    assert rejected.status_code == 500

    failed = asyncio.run(run(failing))
    assert failed.ok is False
    assert "down" in failed.error


def test_fire_and_drain_delivers_in_background():
    received = []

    def handler(request):
        received.append(json.loads(request.content)["type"])
        return httpx.Response(204)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = WebhookNotifier(WebhookConfig(url="https://hooks.example.com"), "s", client=client)
            notifier.fire("streamStart", {"name": "a"})
            notifier.fire("streamEnd", {"name": "a"})
            await notifier.drain(timeout=5)

    asyncio.run(run())
    assert sorted(received) == ["streamEnd", "streamStart"]
