"""Unit tests for the email notification transport."""
import json

import httpx
import pytest

from recovery.integrations.notification_service import NotificationService


def _patch_transport(monkeypatch, handler) -> list[httpx.Request]:
    """Route the service's httpx client through a MockTransport."""
    requests: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    def client_factory(*args, **kwargs) -> httpx.AsyncClient:
        return real_client(*args, transport=httpx.MockTransport(recording), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)
    return requests


@pytest.mark.asyncio
async def test_without_provider_messages_are_logged_as_sent() -> None:
    service = NotificationService(api_url="", api_key="")

    result = await service.send("ana@example.com", "Subject", "<p>Hi</p>", "Hi")

    assert result.success
    assert result.message_id.startswith("dev-")


@pytest.mark.asyncio
async def test_missing_fields_fail_without_raising() -> None:
    service = NotificationService(api_url="https://mail.test/send", api_key="key")

    result = await service.send("", "Subject", "<p>Hi</p>", "Hi")

    assert not result.success
    assert result.error == "Missing required email fields"


@pytest.mark.asyncio
async def test_posts_message_to_provider(monkeypatch) -> None:
    requests = _patch_transport(monkeypatch, lambda request: httpx.Response(200, json={"id": "email_42"}))
    service = NotificationService(api_url="https://mail.test/send", api_key="key", sender="billing@gym.test")

    result = await service.send("ana@example.com", "Payment Failed", "<p>Hi</p>", "Hi")

    assert result.success
    assert result.message_id == "email_42"
    assert requests[0].headers["Authorization"] == "Bearer key"
    payload = json.loads(requests[0].content)
    assert payload["to"] == ["ana@example.com"]
    assert payload["from"] == "billing@gym.test"
    assert payload["subject"] == "Payment Failed"


@pytest.mark.asyncio
async def test_provider_error_is_reported_not_raised(monkeypatch) -> None:
    _patch_transport(monkeypatch, lambda request: httpx.Response(503, text="unavailable"))
    service = NotificationService(api_url="https://mail.test/send", api_key="key")

    result = await service.send("ana@example.com", "Subject", "<p>Hi</p>", "Hi")

    assert not result.success
    assert "HTTP 503" in result.error


@pytest.mark.asyncio
async def test_transport_timeout_is_reported(monkeypatch) -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    _patch_transport(monkeypatch, timeout)
    service = NotificationService(api_url="https://mail.test/send", api_key="key", timeout_seconds=2)

    result = await service.send("ana@example.com", "Subject", "<p>Hi</p>", "Hi")

    assert not result.success
    assert "timeout" in result.error.lower()
