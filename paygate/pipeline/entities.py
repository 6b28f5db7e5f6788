"""
Pipeline Domain Entities.

- Job: One paid unit of work, from creation to a terminal state
- WebhookEndpoint: Registration of a remote counterparty
- DeliveryAttempt: Tracked webhook delivery for one job event
- VerificationVerdict: Outcome of checking a payment claim on-chain
- TextResult / ImageResult: Typed provider output envelopes

State values are lower-case strings; they are stored and returned as-is.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Union

# USDC has 6 decimals; prices are kept at the same precision.
PRICE_QUANTUM = Decimal("0.000001")

# Serialized JSON size limits
MAX_INPUT_BYTES = 10_000
MAX_OUTPUT_BYTES = 100_000


class JobState(str, Enum):
    """
    Job lifecycle states.

    pending -> paid -> in_progress -> completed | failed
    paid -> completed | failed (remote counterparty reporting directly)
    """

    PENDING = "pending"
    PAID = "paid"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class FulfillmentKind(str, Enum):
    """Which provider leg a catalog entry is fulfilled by."""

    TEXT = "text"
    IMAGE = "image"


class WebhookEvent(str, Enum):
    """Events a counterparty can subscribe to."""

    JOB_PAID = "job.paid"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"


class DeliveryState(str, Enum):
    """
    Webhook delivery states.

    FAILED is the dead letter: retries are exhausted or the receiver
    rejected the event permanently.
    """

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class RejectionReason(str, Enum):
    """Why a payment claim was rejected."""

    NOT_FOUND = "NotFound"
    NOT_CONFIRMED = "NotConfirmed"
    EXECUTION_FAILED = "ExecutionFailed"
    WRONG_CONTRACT = "WrongContract"
    NOT_A_TRANSFER = "NotATransfer"
    WRONG_RECIPIENT = "WrongRecipient"
    WRONG_AMOUNT = "WrongAmount"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def now_iso() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def quantize_price(value: Union[Decimal, str, int, float]) -> Decimal:
    """Normalize an amount to 6 decimal places."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass
class Job:
    """
    Single paid unit of work.

    Mutability rules:
    - job_id, service_key, requester, provider, input_data, price, created_at: Immutable
    - payment_tx_hash, paid_at, started_at, completed_at: Write-once
    - state, output_data, failure_reason: Changed only by store transitions
    """

    job_id: str
    service_key: str
    requester: str
    provider: str
    input_data: dict
    price: Decimal
    state: JobState = JobState.PENDING
    id: Optional[int] = None
    output_data: Optional[dict] = None
    payment_tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    paid_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def create(
        cls,
        service_key: str,
        requester: str,
        provider: str,
        input_data: dict,
        price: Union[Decimal, str],
    ) -> "Job":
        """Create a new pending Job with generated ID."""
        return cls(
            job_id=generate_uuid(),
            service_key=service_key,
            requester=requester.lower(),
            provider=provider.lower(),
            input_data=input_data,
            price=quantize_price(price),
        )

    def to_dict(self) -> dict:
        """Public representation (the internal row id is never exposed)."""
        return {
            "job_id": self.job_id,
            "service_key": self.service_key,
            "requester": self.requester,
            "provider": self.provider,
            "state": self.state.value,
            "price": str(self.price),
            "input": self.input_data,
            "output": self.output_data,
            "payment_tx_hash": self.payment_tx_hash,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "paid_at": self.paid_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class WebhookEndpoint:
    """
    Registered remote counterparty.

    When remote_fulfillment is True the counterparty performs the work
    itself and reports back through the completion callback, presenting
    api_key. Events sent to it are signed with secret.
    """

    provider: str
    url: str
    events: list[str]
    remote_fulfillment: bool = False
    secret: str = ""
    api_key: str = ""
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def create(
        cls,
        provider: str,
        url: str,
        events: list[str],
        remote_fulfillment: bool = False,
    ) -> "WebhookEndpoint":
        """Create an endpoint with freshly generated secret and API key."""
        return cls(
            provider=provider.lower(),
            url=url,
            events=list(events),
            remote_fulfillment=remote_fulfillment,
            secret=f"whsec_{secrets.token_hex(24)}",
            api_key=f"pk_{secrets.token_hex(24)}",
        )

    def subscribes_to(self, event: Union[WebhookEvent, str]) -> bool:
        value = event.value if isinstance(event, WebhookEvent) else event
        return value in self.events


@dataclass
class DeliveryAttempt:
    """Tracked delivery of one event for one job to one endpoint."""

    delivery_id: str
    job_id: str
    event: str
    endpoint: str
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    last_status: Optional[int] = None
    last_error: Optional[str] = None
    next_retry_at: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def create(cls, job_id: str, event: str, endpoint: str) -> "DeliveryAttempt":
        """Create a new pending delivery with generated ID."""
        return cls(
            delivery_id=generate_uuid(),
            job_id=job_id,
            event=event,
            endpoint=endpoint,
        )


@dataclass(frozen=True)
class VerificationVerdict:
    """Accept/reject decision for one payment claim."""

    accepted: bool
    reason: Optional[RejectionReason] = None
    detail: str = ""
    amount: Optional[Decimal] = None
    sender: Optional[str] = None
    block_number: Optional[int] = None

    @classmethod
    def accept(cls, amount: Decimal, sender: str, block_number: Optional[int]) -> "VerificationVerdict":
        return cls(
            accepted=True,
            detail="payment verified",
            amount=amount,
            sender=sender,
            block_number=block_number,
        )

    @classmethod
    def reject(cls, reason: RejectionReason, detail: str, **kwargs) -> "VerificationVerdict":
        return cls(accepted=False, reason=reason, detail=detail, **kwargs)


@dataclass(frozen=True)
class TextResult:
    """Parsed JSON object returned by the text provider."""

    data: dict

    kind = FulfillmentKind.TEXT

    def to_payload(self) -> dict:
        return dict(self.data)


@dataclass(frozen=True)
class ImageResult:
    """Image URLs returned by the image provider."""

    images: list[str]

    kind = FulfillmentKind.IMAGE

    def to_payload(self) -> dict:
        return {"images": list(self.images)}


ProviderResult = Union[TextResult, ImageResult]


@dataclass(frozen=True)
class PaymentOutcome:
    """
    Result of confirming a payment.

    deferred is True when the job is paid and awaits a remote
    counterparty's completion callback.
    """

    job: Job
    deferred: bool = False
