"""
Webhook Service

Fans delivery-outcome events out to subscribed tenant webhooks. Deliveries
are signed, retried independently and run on a bounded pool of worker tasks
shared by the whole process, so producers never wait on HTTP.
"""
import json
import hmac
import hashlib
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

from msgrelay.config import settings
from msgrelay.database import AsyncSessionLocal
from msgrelay.exceptions import UnsafeUrlError
from msgrelay.logging_config import get_logger
from msgrelay.models.webhook import DeliveryStatus, WebhookEventType
from msgrelay.routes.metrics import track_webhook_delivery
from msgrelay.services.delivery_ledger import DeliveryLedger
from msgrelay.services.url_validation import validate_url

log = get_logger(component="webhook_notifier")

SIGNATURE_HEADER = "X-MsgRelay-Signature"
TIMESTAMP_HEADER = "X-MsgRelay-Timestamp"
EVENT_HEADER = "X-MsgRelay-Event"
USER_AGENT = "MsgRelay-Webhooks/1.0"

# Stored response/error snapshots are capped; much larger bodies are not kept at all
MAX_SNAPSHOT_LENGTH = 5000


def generate_webhook_signature(secret: str, timestamp: str, body: str) -> str:
    """Generate HMAC-SHA256 signature over "{timestamp}.{body}"."""
    signed_payload = f"{timestamp}.{body}"
    return hmac.new(
        secret.encode(),
        signed_payload.encode(),
        hashlib.sha256
    ).hexdigest()


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with milliseconds, e.g. 2025-09-30T00:00:00.000Z. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_timestamp() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def build_payload(event: str, tenant_id: str, data: dict, timestamp: str) -> dict:
    return {
        "event": event,
        "timestamp": timestamp,
        "tenant_id": tenant_id,
        "data": data,
    }


def truncate(text: str, max_length: int = MAX_SNAPSHOT_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + "... (truncated)"


def response_snapshot(text: str, max_length: int = MAX_SNAPSHOT_LENGTH) -> str:
    """Size-bounded copy of a response body."""
    if len(text) > max_length * 10:
        return f"[Response too large: {len(text)} bytes]"
    return truncate(text, max_length)


@dataclass(frozen=True)
class DeliveryTask:
    """One event occurrence bound for one webhook."""
    webhook_id: str
    url: str
    secret: str
    event: str
    payload: dict
    body: str
    timestamp: str


@dataclass
class DeliveryOutcome:
    success: bool
    attempts: int
    response_code: int | None = None
    response_body: str | None = None
    error: str | None = None


class WebhookNotifier:
    """
    Signed webhook fan-out with per-delivery retry.

    notify() looks up subscribers and puts one task per webhook on an
    internal queue; `concurrency` worker tasks drain it, which caps outbound
    calls regardless of how many events or webhooks are involved.
    """

    def __init__(
        self,
        session_factory=None,
        concurrency: int | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        url_validator=validate_url,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self.concurrency = concurrency or settings.WEBHOOK_CONCURRENCY
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS
        self.backoff_base = settings.WEBHOOK_BACKOFF_SECONDS if backoff_base is None else backoff_base
        self._url_validator = url_validator
        self._transport = transport
        self._sleep = sleep
        self._queue: asyncio.Queue | None = None
        self._workers: list[asyncio.Task] = []
        self._client: httpx.AsyncClient | None = None

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        """Start the delivery workers. Safe to call more than once."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        self._workers = [
            asyncio.create_task(self._worker(), name=f"webhook-worker-{n}")
            for n in range(self.concurrency)
        ]
        log.info("webhook_notifier_started", concurrency=self.concurrency)

    async def join(self) -> None:
        """Wait until every queued delivery reached a terminal state."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Drain queued deliveries, then stop the workers."""
        if not self.running:
            return
        await self.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        await self._client.aclose()
        self._client = None
        log.info("webhook_notifier_stopped")

    async def notify(self, tenant_id: str, event: WebhookEventType | str, data: dict) -> int:
        """
        Queue delivery of an event to every subscribed webhook.

        Never waits for delivery. Lookup failures are logged and reported
        as 0; only an event name outside WebhookEventType raises ValueError.

        Returns:
            Number of deliveries queued
        """
        event = WebhookEventType(event).value
        try:
            async with self._session_factory() as db:
                webhooks = await DeliveryLedger(db).get_active_webhooks(tenant_id, event)
        except Exception as e:
            log.error("webhook_lookup_failed", tenant_id=tenant_id, webhook_event=event, error=str(e))
            return 0

        if not webhooks:
            log.debug("webhook_no_subscribers", tenant_id=tenant_id, webhook_event=event)
            return 0

        await self.start()

        timestamp = iso_timestamp()
        payload = build_payload(event, tenant_id, data, timestamp)
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

        for webhook in webhooks:
            self._queue.put_nowait(DeliveryTask(
                webhook_id=webhook.id,
                url=webhook.url,
                secret=webhook.secret,
                event=event,
                payload=payload,
                body=body,
                timestamp=timestamp,
            ))

        log.info("webhook_event_queued", tenant_id=tenant_id, webhook_event=event, webhooks=len(webhooks))
        return len(webhooks)

    async def _worker(self) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self.deliver(task)
            except Exception as e:
                # Delivery outcomes never reach the producer
                log.error("webhook_delivery_error", webhook_id=task.webhook_id, error=str(e))
            finally:
                self._queue.task_done()

    async def deliver(self, task: DeliveryTask) -> DeliveryOutcome:
        """Record, validate, send and finalize one delivery."""
        async with self._session_factory() as db:
            delivery = await DeliveryLedger(db).create_webhook_delivery(
                task.webhook_id, task.event, task.payload
            )

        try:
            await self._url_validator(task.url, "webhook delivery")
        except UnsafeUrlError as e:
            outcome = DeliveryOutcome(success=False, attempts=0, error=truncate(str(e)))
        except Exception as e:
            log.error("webhook_url_validation_error", webhook_id=task.webhook_id, error=str(e))
            outcome = DeliveryOutcome(
                success=False,
                attempts=0,
                error=truncate(f"Webhook URL validation failed: {str(e) or e.__class__.__name__}")
            )
        else:
            outcome = await self._send_with_retry(task)

        async with self._session_factory() as db:
            await DeliveryLedger(db).finish_webhook_delivery(
                delivery.id,
                DeliveryStatus.SUCCESS if outcome.success else DeliveryStatus.FAILED,
                attempts=outcome.attempts,
                response_code=outcome.response_code,
                response_body=outcome.response_body,
                error=outcome.error,
            )

        track_webhook_delivery(task.event, "success" if outcome.success else "failed")
        if outcome.success:
            log.info(
                "webhook_delivered",
                webhook_id=task.webhook_id,
                delivery_id=delivery.id,
                status_code=outcome.response_code,
                attempts=outcome.attempts
            )
        else:
            log.warning(
                "webhook_delivery_failed",
                webhook_id=task.webhook_id,
                delivery_id=delivery.id,
                attempts=outcome.attempts,
                error=outcome.error
            )
        return outcome

    async def _send_with_retry(self, task: DeliveryTask) -> DeliveryOutcome:
        signature = generate_webhook_signature(task.secret, task.timestamp, task.body)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: f"sha256={signature}",
            TIMESTAMP_HEADER: task.timestamp,
            EVENT_HEADER: task.event,
            "User-Agent": USER_AGENT,
        }

        last_error = "Unknown error"
        last_code = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.post(task.url, content=task.body.encode("utf-8"), headers=headers)
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                last_code = None
                log.debug("webhook_attempt_failed", webhook_id=task.webhook_id, attempt=attempt, error=last_error)
            except Exception as e:
                # Not a transport failure (e.g. httpx.InvalidURL); retrying cannot help
                return DeliveryOutcome(
                    success=False,
                    attempts=attempt,
                    error=truncate(f"Webhook delivery failed after {attempt} attempt(s): {str(e) or e.__class__.__name__}")
                )
            else:
                if 200 <= response.status_code < 300:
                    return DeliveryOutcome(
                        success=True,
                        attempts=attempt,
                        response_code=response.status_code,
                        response_body=response_snapshot(response.text)
                    )
                if response.status_code < 500:
                    # Client errors are not retried
                    return DeliveryOutcome(
                        success=False,
                        attempts=attempt,
                        response_code=response.status_code,
                        response_body=response_snapshot(response.text),
                        error=f"Webhook rejected with status {response.status_code} after {attempt} attempt(s)"
                    )
                last_error = f"HTTP {response.status_code}"
                last_code = response.status_code
                log.debug("webhook_attempt_failed", webhook_id=task.webhook_id, attempt=attempt, status_code=last_code)

            if attempt < self.max_attempts:
                # Exponential backoff: 1s, 2s, 4s, ...
                await self._sleep(self.backoff_base * 2 ** (attempt - 1))

        return DeliveryOutcome(
            success=False,
            attempts=self.max_attempts,
            response_code=last_code,
            error=truncate(f"Webhook delivery failed after {self.max_attempts} attempt(s): {last_error}")
        )

    async def stats(self, webhook_id: str) -> dict:
        """
        Delivery statistics for a webhook.

        Returns:
            {total, successful, failed, pending, success_rate} where
            success_rate is a percentage string such as "66.67%"
        """
        async with self._session_factory() as db:
            counts = await DeliveryLedger(db).webhook_status_counts(webhook_id)

        total = sum(counts.values())
        successful = counts.get(DeliveryStatus.SUCCESS.value, 0)
        rate = (successful / total * 100) if total else 0.0
        return {
            "total": total,
            "successful": successful,
            "failed": counts.get(DeliveryStatus.FAILED.value, 0),
            "pending": counts.get(DeliveryStatus.PENDING.value, 0),
            "success_rate": f"{rate:.2f}%",
        }

    async def cleanup(self, older_than_days: int | None = None) -> int:
        """
        Delete webhook deliveries older than the retention window.

        Runs from the worker's daily cron, not on the delivery path.
        """
        days = settings.WEBHOOK_RETENTION_DAYS if older_than_days is None else older_than_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async with self._session_factory() as db:
            purged = await DeliveryLedger(db).purge_webhook_deliveries(cutoff)
        log.info("webhook_deliveries_cleaned", purged=purged, older_than_days=days)
        return purged


# Process-wide notifier; its worker pool is the global delivery limit
_notifier: WebhookNotifier | None = None


def get_notifier() -> WebhookNotifier:
    """Get or create the process-wide notifier."""
    global _notifier
    if _notifier is None:
        _notifier = WebhookNotifier()
    return _notifier
