"""Tests for notification retry, timeout and the email gateway client."""

import asyncio
import json

import httpx
import pytest

from raffle_core.notifications import (
    HttpNotificationDispatcher, Message, NotificationDispatcher, NotificationQueue,
)

from .conftest import FakeDispatcher

MESSAGE = Message(to="player@example.com", subject="Hello", body="Body")


@pytest.mark.asyncio
async def test_retries_then_succeeds():
    dispatcher = FakeDispatcher(failures=1)
    queue = NotificationQueue(dispatcher, max_attempts=2, backoff_seconds=0, timeout_seconds=1)

    result = await queue.deliver(MESSAGE, "receipt")

    assert result.success
    assert len(dispatcher.attempts) == 2


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    dispatcher = FakeDispatcher(failures=5)
    queue = NotificationQueue(dispatcher, max_attempts=3, backoff_seconds=0, timeout_seconds=1)

    result = await queue.deliver(MESSAGE, "winner")

    assert not result.success
    assert result.error == "mailbox unavailable"
    assert len(dispatcher.attempts) == 3


@pytest.mark.asyncio
async def test_slow_send_times_out():
    queue = NotificationQueue(FakeDispatcher(delay=1), max_attempts=1, backoff_seconds=0,
                              timeout_seconds=0.05)
    result = await queue.deliver(MESSAGE, "reminder")
    assert not result.success
    assert "timed out" in result.error


class ExplodingDispatcher(NotificationDispatcher):
    async def send(self, to, subject, body):
        raise ConnectionError("smtp down")


@pytest.mark.asyncio
async def test_dispatcher_exception_becomes_failure():
    queue = NotificationQueue(ExplodingDispatcher(), max_attempts=1, backoff_seconds=0, timeout_seconds=1)
    result = await queue.deliver(MESSAGE, "receipt")
    assert not result.success
    assert result.error == "smtp down"


@pytest.mark.asyncio
async def test_submit_reports_outcome_in_background():
    queue = NotificationQueue(FakeDispatcher(), max_attempts=1, backoff_seconds=0, timeout_seconds=1)
    outcomes = []

    async def record(result):
        outcomes.append(result.success)

    task = queue.submit(MESSAGE, "receipt", on_complete=record)
    assert task in queue.background_tasks
    await queue.drain()

    assert outcomes == [True]
    assert not queue.background_tasks


@pytest.mark.asyncio
async def test_outcome_recorder_failure_is_contained():
    queue = NotificationQueue(FakeDispatcher(), max_attempts=1, backoff_seconds=0, timeout_seconds=1)

    async def record(result):
        raise RuntimeError("ledger down")

    task = queue.submit(MESSAGE, "receipt", on_complete=record)
    result = await asyncio.wait_for(task, timeout=1)
    assert result.success


@pytest.mark.asyncio
async def test_http_dispatcher_posts_email():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "delivered", "message_id": "msg_1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await HttpNotificationDispatcher(client, "https://mail.test").send(
            " player@example.com ", "Hello ", "Body"
        )

    assert result.success
    assert seen["url"] == "https://mail.test/email"
    assert seen["body"] == {"to": "player@example.com", "subject": "Hello", "body": "Body"}


@pytest.mark.asyncio
async def test_http_dispatcher_reports_provider_failure():
    def handler(request):
        return httpx.Response(200, json={"status": "failed", "error": "bounced"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await HttpNotificationDispatcher(client, "https://mail.test").send("a@b.co", "s", "b")

    assert not result.success
    assert result.error == "bounced"


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [["delivered"], "delivered", 42])
async def test_http_dispatcher_rejects_non_object_body(payload):
    def handler(request):
        return httpx.Response(200, json=payload)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await HttpNotificationDispatcher(client, "https://mail.test").send("a@b.co", "s", "b")

    assert not result.success
    assert "body" in result.error
