"""
Webhook notification service for job lifecycle events.

Sends signed HTTP POST notifications (job.paid, job.completed,
job.failed) to registered counterparty endpoints. Every delivery is
recorded in the job store; attempts are retried with exponential backoff
and the record is dead-lettered (state "failed") on exhaustion.

Delivery outcome never changes the job's state.
"""

import asyncio
import hashlib
import hmac
import ipaddress
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx

from paygate.pipeline.entities import (
    DeliveryAttempt,
    DeliveryState,
    Job,
    WebhookEndpoint,
    WebhookEvent,
    now_iso,
)
from paygate.pipeline.errors import DeliveryFailedError, WebhookRegistrationError
from paygate.pipeline.persistence import JobStore

logger = logging.getLogger(__name__)

# Webhook configuration
WEBHOOK_TIMEOUT_SECONDS = 30
WEBHOOK_MAX_RETRIES = 3
WEBHOOK_RETRY_BASE_DELAY = 1.0  # seconds
WEBHOOK_QUEUE_SIZE = 1000
WEBHOOK_MAX_CONCURRENCY = 16  # deliveries in flight at once
WEBHOOK_SHUTDOWN_GRACE_SECONDS = 5.0

QUEUE_FULL_ERROR = "Webhook queue full"
SHUTDOWN_ERROR = "Notifier stopped before delivery completed"

SIGNATURE_HEADER = "X-Paygate-Signature"
EVENT_HEADER = "X-Paygate-Event"
DELIVERY_HEADER = "X-Paygate-Delivery"
USER_AGENT = "Paygate/1.0"


def retry_delays(
    max_retries: int = WEBHOOK_MAX_RETRIES,
    base_delay: float = WEBHOOK_RETRY_BASE_DELAY,
) -> list[float]:
    """
    Delay before each attempt: the initial attempt goes out immediately,
    retry n waits base_delay * 2**(n-1).

    >>> retry_delays(3, 1.0)
    [0.0, 1.0, 2.0, 4.0]
    """
    return [0.0] + [base_delay * (2 ** n) for n in range(max_retries)]


def build_event_payload(job: Job, event: str, delivery_id: str) -> dict:
    """
    Build webhook payload from job data.

    Args:
        job: Job the event is about
        event: Event name (job.paid, job.completed, job.failed)
        delivery_id: Delivery record ID, for receiver-side deduplication

    Returns:
        Dictionary payload for webhook POST
    """
    payload = {
        "event": event,
        "jobId": job.job_id,
        "serviceKey": job.service_key,
        "state": job.state.value,
        "input": job.input_data,
        "price": str(job.price),
        "timestamp": now_iso(),
        "deliveryId": delivery_id,
    }

    if event == WebhookEvent.JOB_COMPLETED.value:
        payload["output"] = job.output_data
    elif event == WebhookEvent.JOB_FAILED.value:
        output = job.output_data or {}
        payload["error"] = output.get("error") or {"code": job.failure_reason, "message": None}

    return payload


def sign_payload(secret: str, body: bytes) -> str:
    """Return the signature header value for a raw request body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Constant-time check of a signature header value (receiver side)."""
    return hmac.compare_digest(sign_payload(secret, body), signature or "")


def validate_webhook_url(url: str, production: bool = False) -> str:
    """
    Validate a counterparty webhook URL.

    HTTPS is always required. In production, localhost and loopback,
    private, link-local and reserved IP literals are rejected.

    Returns:
        The URL unchanged

    Raises:
        WebhookRegistrationError: If the URL is not acceptable
    """
    parsed = urlparse(url or "")

    if parsed.scheme != "https":
        raise WebhookRegistrationError("Webhook URL must use HTTPS")

    host = parsed.hostname
    if not host:
        raise WebhookRegistrationError("Webhook URL has no host")

    if not production:
        return url

    if host == "localhost" or host.endswith(".localhost"):
        raise WebhookRegistrationError("Webhook URL must not point to localhost")

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return url

    if (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_reserved
        or address.is_unspecified
        or address.is_multicast
    ):
        raise WebhookRegistrationError(
            f"Webhook URL must not point to a private or reserved address ({host})"
        )

    return url


class WebhookNotifier:
    """
    Delivers job events to counterparty endpoints.

    notify() runs a full delivery (all attempts) and returns the final
    record. enqueue() records the delivery and hands it to a background
    worker draining an asyncio queue; call start() once the event loop
    is running. The worker runs each delivery as its own task, at most
    max_concurrency at a time, so a slow endpoint only holds one slot.
    """

    def __init__(
        self,
        store: JobStore,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        max_retries: int = WEBHOOK_MAX_RETRIES,
        base_delay: float = WEBHOOK_RETRY_BASE_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        queue_size: int = WEBHOOK_QUEUE_SIZE,
        max_concurrency: int = WEBHOOK_MAX_CONCURRENCY,
    ):
        """
        Initialize WebhookNotifier.

        Args:
            store: JobStore for delivery records
            timeout: Per-attempt request timeout in seconds
            max_retries: Retries after the initial attempt
            base_delay: Delay before the first retry (doubles each retry)
            transport: httpx transport override (tests use MockTransport)
            sleep: Awaitable sleep used between attempts
            queue_size: Maximum queued deliveries
            max_concurrency: Maximum deliveries in flight
        """
        self.store = store
        self.timeout = timeout
        self.delays = retry_delays(max_retries, base_delay)
        self._transport = transport
        self._sleep = sleep
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._worker_task: Optional[asyncio.Task] = None
        self._slots = asyncio.Semaphore(max(1, max_concurrency))
        self._in_flight: dict[asyncio.Task, DeliveryAttempt] = {}

    @property
    def max_attempts(self) -> int:
        return len(self.delays)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def notify(
        self,
        endpoint: WebhookEndpoint,
        job: Job,
        event: str,
        delivery: Optional[DeliveryAttempt] = None,
    ) -> DeliveryAttempt:
        """
        Deliver one event with retry logic.

        Args:
            endpoint: Registered counterparty endpoint
            job: Job the event is about (state as of the event)
            event: Event name
            delivery: Record created at enqueue time (created here if None)

        Returns:
            Final DeliveryAttempt (delivered, or failed when dead-lettered)
        """
        if delivery is None:
            delivery = self.store.create_delivery(
                DeliveryAttempt.create(job_id=job.job_id, event=event, endpoint=endpoint.url)
            )

        body = json.dumps(build_event_payload(job, event, delivery.delivery_id)).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Job-ID": job.job_id,
            EVENT_HEADER: event,
            DELIVERY_HEADER: delivery.delivery_id,
            SIGNATURE_HEADER: sign_payload(endpoint.secret, body),
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            for attempt, delay in enumerate(self.delays):
                if delay:
                    logger.debug(f"Retrying webhook in {delay}s...")
                    await self._sleep(delay)

                delivery.attempts = attempt + 1

                try:
                    status = await self._attempt(client, endpoint.url, body, headers)
                except DeliveryFailedError as e:
                    delivery.last_status = e.status
                    delivery.last_error = str(e)
                    logger.warning(
                        f"Webhook {event} failed for job {job.job_id} "
                        f"(attempt {attempt + 1}/{self.max_attempts}): {e}"
                    )

                    is_last = attempt == self.max_attempts - 1
                    if e.permanent or is_last:
                        delivery.state = DeliveryState.FAILED
                        delivery.next_retry_at = None
                        self.store.update_delivery(delivery)
                        break

                    next_retry = datetime.now(timezone.utc) + timedelta(seconds=self.delays[attempt + 1])
                    delivery.next_retry_at = next_retry.replace(tzinfo=None).isoformat() + "Z"
                    self.store.update_delivery(delivery)
                    continue

                delivery.state = DeliveryState.DELIVERED
                delivery.last_status = status
                delivery.last_error = None
                delivery.next_retry_at = None
                self.store.update_delivery(delivery)
                logger.info(
                    f"Webhook {event} sent successfully for job {job.job_id} "
                    f"(attempt {attempt + 1}/{self.max_attempts}, status={status})"
                )
                return delivery

        logger.error(
            f"Webhook {event} dead-lettered after {delivery.attempts} attempts "
            f"for job {job.job_id}: {delivery.last_error}"
        )
        return delivery

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: bytes,
        headers: dict,
    ) -> int:
        """
        POST once.

        Returns:
            The 2xx status code

        Raises:
            DeliveryFailedError: permanent for 4xx, transient otherwise
        """
        try:
            response = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise DeliveryFailedError(f"Timeout after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise DeliveryFailedError(f"Request error: {e}") from e

        status = response.status_code
        if 200 <= status < 300:
            return status

        message = f"HTTP {status}: {response.text[:200]}"
        raise DeliveryFailedError(message, status=status, permanent=400 <= status < 500)

    # =========================================================================
    # Background queue
    # =========================================================================

    def enqueue(self, endpoint: WebhookEndpoint, job: Job, event: str) -> bool:
        """
        Record a delivery and queue it for the background worker.

        The delivery record is created right away, so a delivery that is
        dropped (queue full) or abandoned at shutdown still shows up as
        failed in the job's delivery history.

        Returns:
            True if queued, False if the queue is full
        """
        delivery = self.store.create_delivery(
            DeliveryAttempt.create(job_id=job.job_id, event=event, endpoint=endpoint.url)
        )

        try:
            self._queue.put_nowait((endpoint, job, event, delivery))
        except asyncio.QueueFull:
            logger.error(f"Webhook queue full, dropping {event} for job {job.job_id}")
            self._abandon(delivery, QUEUE_FULL_ERROR)
            return False

        logger.info(f"Queued webhook {event} for job {job.job_id} -> {endpoint.url}")
        return True

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def start(self) -> None:
        """Start the background worker on the running event loop."""
        if self.is_running:
            return
        self._worker_task = asyncio.get_running_loop().create_task(self._worker())
        logger.info("Webhook worker started")

    async def join(self) -> None:
        """Wait until every queued delivery has been processed."""
        await self._queue.join()

    async def stop(self, grace: float = 0.0) -> None:
        """
        Stop the background worker.

        Waits up to grace seconds for queued and in-flight deliveries,
        then cancels the rest. Every delivery left unfinished is marked
        failed.
        """
        if grace > 0 and self.is_running:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(f"Webhook deliveries still pending after {grace}s, cancelling")

        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        in_flight = dict(self._in_flight)
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

        abandoned = [delivery for delivery in in_flight.values() if self._abandon(delivery)]
        while not self._queue.empty():
            *_, delivery = self._queue.get_nowait()
            self._queue.task_done()
            if self._abandon(delivery):
                abandoned.append(delivery)

        logger.info(f"Webhook worker stopped ({len(abandoned)} deliveries abandoned)")

    def _abandon(self, delivery: DeliveryAttempt, error: str = SHUTDOWN_ERROR) -> bool:
        """Mark a still-pending delivery failed. Returns False if it had finished."""
        if delivery.state != DeliveryState.PENDING:
            return False
        delivery.state = DeliveryState.FAILED
        delivery.last_error = error
        delivery.next_retry_at = None
        self.store.update_delivery(delivery)
        return True

    async def _worker(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            endpoint, job, event, delivery = await self._queue.get()
            task = loop.create_task(self._deliver(endpoint, job, event, delivery))
            self._in_flight[task] = delivery
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._in_flight.pop(task, None)

    async def _deliver(
        self,
        endpoint: WebhookEndpoint,
        job: Job,
        event: str,
        delivery: DeliveryAttempt,
    ) -> None:
        try:
            async with self._slots:
                await self.notify(endpoint, job, event, delivery)
        except Exception as e:
            logger.error(
                f"Webhook worker error for job {job.job_id} ({event}): {e}",
                exc_info=True,
            )
        finally:
            self._queue.task_done()
