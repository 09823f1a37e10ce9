"""
Webhook notifier tests
Signed delivery to a local aiohttp receiver, retry policy, bounded queue and the test endpoint
"""

import json

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from services.webhook_notifier import (
    SIGNATURE_HEADER,
    DepositDetectedEvent,
    RefundCompletedEvent,
    WebhookNotifier,
    sign_payload,
    verify_signature,
)

SECRET = "whsec_test_secret"


class Receiver:
    """Collects posted events; `statuses` are returned in order before falling back to 200"""

    def __init__(self):
        self.requests = []
        self.statuses = []

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append({"body": body, "headers": dict(request.headers)})
        status = self.statuses.pop(0) if self.statuses else 200
        return web.Response(status=status, text="ok")


@pytest_asyncio.fixture
async def receiver():
    receiver = Receiver()
    app = web.Application()
    app.router.add_post("/hook", receiver.handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    receiver.url = str(server.make_url("/hook"))
    yield receiver
    await server.close()


@pytest_asyncio.fixture
async def notifier(store):
    notifier = WebhookNotifier(store, queue_size=10, timeout=2, max_attempts=3, retry_delay=0)
    yield notifier
    await notifier.stop(drain_timeout=5)


def _deposit_event(tx_hash="tx_hook_1"):
    return DepositDetectedEvent(
        tx_hash=tx_hash, output_index=0, user_address="addr_user_alice",
        sender_address="addr_test1_sender_a", amount=2_000_000, status="verified", matched=True,
    )


class TestSignatures:

    def test_sign_and_verify(self):
        body = b'{"event":"deposit_detected"}'
        signature = sign_payload(body, SECRET)

        assert signature.startswith("sha256=")
        assert verify_signature(body, signature, SECRET) is True
        assert verify_signature(body + b" ", signature, SECRET) is False
        assert verify_signature(body, signature, "other_secret") is False
        assert verify_signature(body, "", SECRET) is False


class TestDelivery:

    @pytest.mark.asyncio
    async def test_signed_delivery_to_registered_webhook(self, notifier, receiver, store):
        await notifier.register_webhook(receiver.url, SECRET)

        results = await notifier.deliver(_deposit_event())

        assert results[0]["delivered"] is True
        request = receiver.requests[0]
        assert verify_signature(request["body"], request["headers"][SIGNATURE_HEADER], SECRET)
        payload = json.loads(request["body"])
        assert payload["event"] == "deposit_detected"
        assert payload["data"]["tx_hash"] == "tx_hook_1"
        assert "occurred_at" not in payload["data"]
        assert store.list_active_webhooks()[0].last_delivery_status == "delivered"

    @pytest.mark.asyncio
    async def test_unsigned_webhook_has_no_signature_header(self, notifier, receiver):
        await notifier.register_webhook(receiver.url)

        await notifier.deliver(_deposit_event())

        assert SIGNATURE_HEADER not in receiver.requests[0]["headers"]

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, notifier, receiver):
        await notifier.register_webhook(receiver.url, SECRET)
        receiver.statuses = [500, 503]

        results = await notifier.deliver(_deposit_event())

        assert results[0]["delivered"] is True
        assert len(receiver.requests) == 3

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, notifier, receiver, store):
        await notifier.register_webhook(receiver.url, SECRET)
        receiver.statuses = [410]

        results = await notifier.deliver(_deposit_event())

        assert results[0]["delivered"] is False
        assert results[0]["status_code"] == 410
        assert len(receiver.requests) == 1
        assert store.list_active_webhooks()[0].last_delivery_status == "failed:410"

    @pytest.mark.asyncio
    async def test_deliveries_share_one_http_session(self, notifier, receiver):
        await notifier.register_webhook(receiver.url)

        await notifier.deliver(_deposit_event("tx_first"))
        session = await notifier._get_session()
        await notifier.deliver(_deposit_event("tx_second"))

        assert await notifier._get_session() is session
        assert len(receiver.requests) == 2

        await notifier.stop()
        assert session.closed is True

    @pytest.mark.asyncio
    async def test_unregistered_webhook_receives_nothing(self, notifier, receiver):
        await notifier.register_webhook(receiver.url)
        assert await notifier.unregister_webhook(receiver.url) is True

        assert await notifier.deliver(_deposit_event()) == []
        assert receiver.requests == []
        assert await notifier.webhook_count() == 0


class TestQueue:

    @pytest.mark.asyncio
    async def test_worker_delivers_queued_events_in_order(self, notifier, receiver):
        await notifier.register_webhook(receiver.url, SECRET)
        notifier.start()

        notifier.notify(_deposit_event("tx_first"))
        notifier.notify(RefundCompletedEvent(
            tx_hash="tx_first", output_index=0, user_address="addr_user_alice",
            refund_tx_hash="refund_tx_0001", refund_address="addr_test1_sender_a", amount=2_000_000,
        ))
        await notifier.stop(drain_timeout=5)

        events = [json.loads(r["body"])["event"] for r in receiver.requests]
        assert events == ["deposit_detected", "refund_completed"]
        assert notifier.running is False
        assert notifier.delivered == 2

    @pytest.mark.asyncio
    async def test_full_queue_drops_events(self, store):
        notifier = WebhookNotifier(store, queue_size=2, timeout=1, max_attempts=1)

        accepted = [notifier.notify(_deposit_event(f"tx_{i}")) for i in range(4)]

        assert accepted == [True, True, False, False]
        assert notifier.dropped == 2
        assert notifier.pending == 2
        await notifier.stop(drain_timeout=5)

    @pytest.mark.asyncio
    async def test_notify_starts_the_worker(self, notifier, receiver):
        await notifier.register_webhook(receiver.url)
        assert notifier.running is False

        assert notifier.notify(_deposit_event()) is True
        assert notifier.running is True
        await notifier.stop(drain_timeout=5)

        assert len(receiver.requests) == 1
        assert notifier.pending == 0

    @pytest.mark.asyncio
    async def test_unreachable_sink_does_not_stop_the_worker(self, notifier, receiver):
        await notifier.register_webhook("http://127.0.0.1:9/unreachable")
        await notifier.register_webhook(receiver.url)
        notifier.start()

        notifier.notify(_deposit_event())
        await notifier.stop(drain_timeout=5)

        assert len(receiver.requests) == 1


class TestWebhookTest:

    @pytest.mark.asyncio
    async def test_test_webhook_reports_delivery(self, notifier, receiver):
        result = await notifier.test_webhook(receiver.url, SECRET)

        assert result == {"delivered": True, "status_code": 200, "error": None}
        payload = json.loads(receiver.requests[0]["body"])
        assert payload["event"] == "webhook_test"

    @pytest.mark.asyncio
    async def test_test_webhook_reports_failure(self, notifier, receiver):
        receiver.statuses = [500]

        result = await notifier.test_webhook(receiver.url)

        assert result["delivered"] is False
        assert result["status_code"] == 500
        assert len(receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_test_webhook_connection_error(self, notifier):
        result = await notifier.test_webhook("http://127.0.0.1:9/unreachable")

        assert result["delivered"] is False
        assert result["status_code"] is None
        assert result["error"]
