"""
Webhook Notifier - best-effort delivery of deposit and refund events

Events go onto a bounded queue and a single worker task posts them to every active
registration. Nothing here touches deposit or refund state; a slow or failing sink can
only delay or drop notifications, never a refund.
"""

import asyncio
import contextlib
import hashlib
import hmac
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

import aiohttp

from config import Config
from models import WebhookEventType, WebhookRegistration
from services.reconciliation_store import ReconciliationStore
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Refund-Signature"


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 over the exact request body, formatted as sha256=<hex>"""
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Receiver-side check, constant time"""
    if not signature or not secret:
        return False
    return hmac.compare_digest(signature, sign_payload(body, secret))


class WebhookEvent:
    """Base for typed notification events"""

    event_type: ClassVar[WebhookEventType]

    def data(self) -> Dict[str, Any]:
        values = asdict(self)
        values.pop("occurred_at", None)
        return values

    def to_payload(self) -> Dict[str, Any]:
        occurred_at: datetime = getattr(self, "occurred_at")
        return {
            "event": self.event_type.value,
            "timestamp": occurred_at.isoformat() + "Z",
            "data": self.data(),
        }


@dataclass
class DepositDetectedEvent(WebhookEvent):
    event_type: ClassVar[WebhookEventType] = WebhookEventType.DEPOSIT_DETECTED

    tx_hash: str
    output_index: int
    user_address: str
    sender_address: str
    amount: int
    status: str
    matched: bool
    occurred_at: datetime = field(default_factory=get_naive_utc_now)


@dataclass
class RefundCompletedEvent(WebhookEvent):
    event_type: ClassVar[WebhookEventType] = WebhookEventType.REFUND_COMPLETED

    tx_hash: str
    output_index: int
    user_address: str
    refund_tx_hash: str
    refund_address: str
    amount: int
    occurred_at: datetime = field(default_factory=get_naive_utc_now)


@dataclass
class RefundFailedEvent(WebhookEvent):
    event_type: ClassVar[WebhookEventType] = WebhookEventType.REFUND_FAILED

    tx_hash: str
    output_index: int
    user_address: str
    attempts: int
    last_error: Optional[str]
    last_attempted_tx_hash: Optional[str]
    occurred_at: datetime = field(default_factory=get_naive_utc_now)


@dataclass
class WebhookTestEvent(WebhookEvent):
    event_type: ClassVar[WebhookEventType] = WebhookEventType.WEBHOOK_TEST

    message: str = "Test notification from the deposit refund monitor"
    occurred_at: datetime = field(default_factory=get_naive_utc_now)


class WebhookNotifier:
    """Bounded queue plus one delivery worker"""

    def __init__(self, store: ReconciliationStore, queue_size: int = None, timeout: float = None,
                 max_attempts: int = None, retry_delay: float = 1.0):
        self.store = store
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.WEBHOOK_TIMEOUT)
        self.max_attempts = max_attempts or Config.WEBHOOK_MAX_ATTEMPTS
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size or Config.WEBHOOK_QUEUE_SIZE)
        self._worker: Optional[asyncio.Task] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self.dropped = 0
        self.delivered = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self):
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="webhook-notifier")
        logger.info("📣 Webhook notifier started")

    async def stop(self, drain_timeout: float = 5.0):
        """Give queued events a short window to go out, then stop the worker"""
        if self._worker is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ WEBHOOK_DRAIN_TIMEOUT: {self._queue.qsize()} events not delivered")
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
            logger.info("📣 Webhook notifier stopped")
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def notify(self, event: WebhookEvent) -> bool:
        """Enqueue without blocking; a full queue drops the event. Starts the worker if needed."""
        self.start()
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"⚠️ WEBHOOK_QUEUE_FULL: dropped {event.event_type.value} event ({self.dropped} dropped so far)"
            )
            return False

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self.deliver(event)
            except Exception as e:
                # One bad event must not stop later notifications
                logger.error(f"❌ WEBHOOK_WORKER_ERROR: {event.event_type.value} - {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def deliver(self, event: WebhookEvent) -> List[Dict[str, Any]]:
        """Post one event to every active registration"""
        registrations: List[WebhookRegistration] = await asyncio.to_thread(self.store.list_active_webhooks)
        results = []
        for registration in registrations:
            result = await self._post_with_retries(registration.url, registration.secret, event)
            status = "delivered" if result["delivered"] else f"failed:{result['status_code'] or 'error'}"
            await asyncio.to_thread(self.store.record_webhook_delivery, registration.url, status)
            results.append(result)
        return results

    async def _post_with_retries(self, url: str, secret: Optional[str], event: WebhookEvent) -> Dict[str, Any]:
        result: Dict[str, Any] = {"url": url, "delivered": False, "status_code": None, "error": None}
        for attempt in range(1, self.max_attempts + 1):
            result = await self._post(url, secret, event)
            if result["delivered"]:
                self.delivered += 1
                return result
            status_code = result["status_code"]
            if status_code is not None and 400 <= status_code < 500 and status_code != 429:
                break
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))

        logger.warning(
            f"⚠️ WEBHOOK_DELIVERY_FAILED: {event.event_type.value} to {url} "
            f"(status={result['status_code']}, error={result['error']})"
        )
        return result

    async def _post(self, url: str, secret: Optional[str], event: WebhookEvent) -> Dict[str, Any]:
        body = json.dumps(event.to_payload(), separators=(",", ":"), default=str).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": Config.WEBHOOK_USER_AGENT}
        if secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, secret)

        try:
            session = await self._get_session()
            async with session.post(url, data=body, headers=headers) as response:
                delivered = 200 <= response.status < 300
                if delivered:
                    logger.debug(f"Webhook {event.event_type.value} delivered to {url}")
                return {"url": url, "delivered": delivered, "status_code": response.status, "error": None}
        except asyncio.TimeoutError:
            return {"url": url, "delivered": False, "status_code": None, "error": "timeout"}
        except aiohttp.ClientError as e:
            return {"url": url, "delivered": False, "status_code": None, "error": str(e)}

    # ------------------------------------------------------------------
    # Registration management
    # ------------------------------------------------------------------

    async def register_webhook(self, url: str, secret: Optional[str] = None) -> WebhookRegistration:
        registration = await asyncio.to_thread(self.store.upsert_webhook, url, secret)
        logger.info(f"🔗 WEBHOOK_REGISTERED: {url} (signed={bool(secret)})")
        return registration

    async def unregister_webhook(self, url: str) -> bool:
        removed = await asyncio.to_thread(self.store.deactivate_webhook, url)
        if removed:
            logger.info(f"🔗 WEBHOOK_UNREGISTERED: {url}")
        return removed

    async def webhook_count(self) -> int:
        return len(await asyncio.to_thread(self.store.list_active_webhooks))

    async def test_webhook(self, url: str, secret: Optional[str] = None) -> Dict[str, Any]:
        """Send a synthetic event straight to `url`, bypassing the queue and the registry"""
        result = await self._post(url, secret, WebhookTestEvent())
        logger.info(
            f"🧪 WEBHOOK_TEST: {url} delivered={result['delivered']} status={result['status_code']}"
        )
        return {"delivered": result["delivered"], "status_code": result["status_code"], "error": result["error"]}
