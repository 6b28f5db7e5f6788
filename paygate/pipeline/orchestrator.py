"""
Job Orchestrator - drives jobs through the payment-gated state machine.

Local fulfillment:
    confirm_payment: verify -> mark_paid -> mark_in_progress -> dispatch
                     -> mark_completed | mark_failed -> webhook
Remote fulfillment (counterparty registered with remote_fulfillment):
    confirm_payment: verify -> mark_paid -> job.paid webhook (deferred)
    completion callback: mark_in_progress? -> mark_completed | mark_failed

Usage:
    orchestrator = JobOrchestrator.create(load_settings())
    job = orchestrator.create_job("brainstorm", requester, {"prompt": "..."})
    outcome = await orchestrator.confirm_payment(job.job_id, tx_hash)
"""

import asyncio
import hmac
import json
import logging
import re
from typing import Optional

from paygate.config import Settings
from paygate.infra.webhook import WebhookNotifier, validate_webhook_url
from paygate.payments.chain import ChainGateway
from paygate.payments.verifier import PaymentVerifier
from paygate.providers.dispatcher import ProviderDispatcher, extract_prompt
from paygate.providers.model_provider import AnthropicTextProvider, ReplicateImageProvider

from .catalog import get_entry
from .entities import (
    MAX_INPUT_BYTES,
    DeliveryAttempt,
    Job,
    JobState,
    PaymentOutcome,
    WebhookEndpoint,
    WebhookEvent,
)
from .errors import (
    ConflictError,
    InvalidInputError,
    InvalidOperationError,
    MalformedOutputError,
    PipelineError,
    ProviderAuthError,
    ProviderError,
    VerificationRejected,
    WebhookRegistrationError,
)
from .persistence import JobStore

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

REMOTE_FAILURE_REASON = ProviderError.code


def _require_address(value: Optional[str], field: str) -> str:
    if not isinstance(value, str) or not ADDRESS_PATTERN.match(value):
        raise InvalidInputError(f"Invalid {field} address: {value!r}")
    return value.lower()


class JobOrchestrator:
    """
    Coordinates the store, verifier, dispatcher and notifier.

    Provides:
    - Job creation with catalog price copy
    - Payment confirmation and local execution
    - Remote completion callbacks
    - Counterparty webhook registration
    """

    def __init__(
        self,
        store: JobStore,
        verifier: PaymentVerifier,
        dispatcher: ProviderDispatcher,
        notifier: Optional[WebhookNotifier] = None,
        platform_wallet: Optional[str] = None,
        production: bool = False,
    ):
        """
        Initialize JobOrchestrator with all components.

        Use JobOrchestrator.create() to build from settings.
        """
        self.store = store
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.platform_wallet = platform_wallet.lower() if platform_wallet else None
        self.production = production

    @classmethod
    def create(cls, settings: Settings) -> "JobOrchestrator":
        """
        Create a JobOrchestrator with all components wired together.

        Args:
            settings: Resolved configuration

        Returns:
            Configured JobOrchestrator
        """
        store = JobStore(settings.db_path)

        gateway = ChainGateway(settings.rpc_url, timeout=settings.rpc_timeout)
        verifier = PaymentVerifier(
            gateway,
            token_address=settings.token_address,
            decimals=settings.token_decimals,
            tolerance=settings.amount_tolerance,
            max_attempts=settings.rpc_max_attempts,
            backoff=settings.rpc_backoff,
        )

        dispatcher = ProviderDispatcher(
            text_provider=AnthropicTextProvider(
                api_key=settings.anthropic_api_key,
                model_name=settings.text_model,
                max_tokens=settings.text_max_tokens,
            ),
            image_provider=ReplicateImageProvider(api_token=settings.replicate_api_token),
            text_timeout=settings.text_timeout,
            image_timeout=settings.image_timeout,
        )

        notifier = WebhookNotifier(store, timeout=settings.webhook_timeout)

        return cls(
            store=store,
            verifier=verifier,
            dispatcher=dispatcher,
            notifier=notifier,
            platform_wallet=settings.platform_wallet,
            production=settings.is_production,
        )

    # =========================================================================
    # Jobs
    # =========================================================================

    def create_job(
        self,
        service_key: str,
        requester: str,
        input_data: dict,
        provider: Optional[str] = None,
    ) -> Job:
        """
        Create a pending job priced from the catalog.

        Raises:
            UnknownServiceError: If service_key is not in the catalog
            InvalidInputError: If an address or the input is invalid
        """
        entry = get_entry(service_key)
        requester = _require_address(requester, "requester")

        if provider is None:
            if self.platform_wallet is None:
                raise InvalidInputError(
                    "A provider address is required (no platform wallet configured)"
                )
            provider = self.platform_wallet
        provider = _require_address(provider, "provider")

        if not isinstance(input_data, dict):
            raise InvalidInputError("Job input must be a JSON object")
        if len(json.dumps(input_data).encode("utf-8")) > MAX_INPUT_BYTES:
            raise InvalidInputError(f"Job input exceeds {MAX_INPUT_BYTES} bytes")
        extract_prompt(entry.kind, input_data)

        job = Job.create(
            service_key=entry.key,
            requester=requester,
            provider=provider,
            input_data=input_data,
            price=entry.price,
        )
        self.store.create_job(job)
        logger.info(f"[Orchestrator] Created job {job.job_id} ({entry.key}, {job.price} USDC)")
        return job

    def get_job(self, job_id: str) -> Job:
        """Raises JobNotFoundError for unknown jobs."""
        return self.store.require_job(job_id)

    def list_deliveries(self, job_id: str) -> list[DeliveryAttempt]:
        self.store.require_job(job_id)
        return self.store.list_deliveries(job_id)

    # =========================================================================
    # Payment
    # =========================================================================

    async def confirm_payment(self, job_id: str, tx_hash: str) -> PaymentOutcome:
        """
        Verify a payment claim and advance the job.

        Returns:
            PaymentOutcome with the terminal job, or the paid job with
            deferred=True when a remote counterparty fulfills it

        Raises:
            JobNotFoundError: If the job doesn't exist
            ConflictError: If the job is no longer pending
            PaymentReusedError: If tx_hash already paid for another job
            VerificationRejected: If the claim does not match (job stays pending)
        """
        job = self.store.require_job(job_id)
        if job.state != JobState.PENDING:
            raise ConflictError(job_id, expected_status=JobState.PENDING.value, actual_status=job.state.value)

        verdict = await asyncio.to_thread(self.verifier.verify, tx_hash, job.provider, job.price)
        if not verdict.accepted:
            raise VerificationRejected(verdict.reason.value, verdict.detail)

        job = self.store.mark_paid(job_id, tx_hash)
        endpoint = self.store.get_endpoint(job.provider)
        self._notify(endpoint, job, WebhookEvent.JOB_PAID)

        if endpoint is not None and endpoint.remote_fulfillment:
            logger.info(f"[Orchestrator] Job {job_id} paid; awaiting remote provider {job.provider}")
            return PaymentOutcome(job=job, deferred=True)

        job = await self.run_job(job)
        return PaymentOutcome(job=job)

    async def run_job(self, job: Job) -> Job:
        """
        Execute a paid job locally and record its terminal state.

        Always leaves the job completed or failed once it has been
        moved to in_progress.

        Raises:
            ConflictError: If the job is not paid (nothing is executed)
        """
        job = self.store.mark_in_progress(job.job_id)

        try:
            result = await self.dispatcher.dispatch(job)
        except PipelineError as e:
            logger.warning(f"[Orchestrator] Job {job.job_id} failed: {e.code}: {e}")
            job = self.store.mark_failed(job.job_id, e.code, str(e))
        except Exception as e:
            logger.error(f"[Orchestrator] Job {job.job_id} unexpected error: {e}", exc_info=True)
            job = self.store.mark_failed(job.job_id, ProviderError.code, "Unexpected provider failure")
        else:
            try:
                job = self.store.mark_completed(job.job_id, result.to_payload())
            except InvalidOperationError as e:
                job = self.store.mark_failed(job.job_id, MalformedOutputError.code, str(e))

        event = WebhookEvent.JOB_COMPLETED if job.state == JobState.COMPLETED else WebhookEvent.JOB_FAILED
        self._notify(self.store.get_endpoint(job.provider), job, event)
        return job

    # =========================================================================
    # Remote completion callbacks
    # =========================================================================

    def _authenticate(self, job: Job, api_key: Optional[str]) -> WebhookEndpoint:
        endpoint = self.store.get_endpoint(job.provider)
        if endpoint is None or not endpoint.remote_fulfillment:
            raise ProviderAuthError(f"Job {job.job_id} is not fulfilled by a remote provider")
        if not api_key or not hmac.compare_digest(endpoint.api_key, api_key):
            raise ProviderAuthError("Invalid provider API key")
        return endpoint

    def record_remote_progress(self, job_id: str, api_key: Optional[str]) -> Job:
        """
        Remote counterparty reports it started work.

        Idempotent while the job is already in_progress.
        """
        job = self.store.require_job(job_id)
        self._authenticate(job, api_key)

        if job.state == JobState.IN_PROGRESS:
            return job

        return self.store.mark_in_progress(job_id)

    def record_remote_result(
        self,
        job_id: str,
        api_key: Optional[str],
        status: str,
        output: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> Job:
        """
        Remote counterparty reports a result.

        Args:
            status: "in_progress", "completed" or "failed"
            output: Result object (completed)
            error: Failure message (failed)

        Raises:
            ProviderAuthError: If the API key does not match
            ConflictError: If the job already reached a terminal state
            InvalidInputError: If status or output is invalid
        """
        if status == JobState.IN_PROGRESS.value:
            return self.record_remote_progress(job_id, api_key)

        job = self.store.require_job(job_id)
        endpoint = self._authenticate(job, api_key)

        if status == JobState.COMPLETED.value:
            if not isinstance(output, dict) or not output:
                raise InvalidInputError("A completed result requires a non-empty output object")
            try:
                job = self.store.mark_completed(job_id, output)
            except InvalidOperationError as e:
                raise InvalidInputError(str(e)) from e
            self._notify(endpoint, job, WebhookEvent.JOB_COMPLETED)
        elif status == JobState.FAILED.value:
            job = self.store.mark_failed(
                job_id, REMOTE_FAILURE_REASON, error or "Remote provider reported failure"
            )
            self._notify(endpoint, job, WebhookEvent.JOB_FAILED)
        else:
            raise InvalidInputError(f"Unsupported status: {status!r}")

        logger.info(f"[Orchestrator] Remote provider reported {status} for job {job_id}")
        return job

    # =========================================================================
    # Webhooks
    # =========================================================================

    def register_webhook(
        self,
        provider: str,
        url: str,
        events: Optional[list[str]] = None,
        remote_fulfillment: bool = False,
        provider_key: Optional[str] = None,
        operator: bool = False,
    ) -> WebhookEndpoint:
        """
        Register or replace a counterparty endpoint.

        A fresh secret and API key are generated on every registration.
        New registrations and any registration of the platform wallet
        need the operator; replacing an existing registration needs the
        operator or the endpoint's current API key.

        Args:
            provider_key: Current API key of the registered endpoint
            operator: Caller presented the operator key

        Raises:
            InvalidInputError: If the provider address is invalid
            ProviderAuthError: If the caller may not (re)register the provider
            WebhookRegistrationError: If the URL or events are not acceptable
        """
        provider = _require_address(provider, "provider")
        self._authorize_registration(provider, provider_key, operator)
        validate_webhook_url(url, production=self.production)

        known = [e.value for e in WebhookEvent]
        events = list(dict.fromkeys(events or known))
        unknown = [e for e in events if e not in known]
        if unknown:
            raise WebhookRegistrationError(f"Unknown events: {', '.join(unknown)}")

        endpoint = self.store.upsert_endpoint(
            WebhookEndpoint.create(
                provider=provider,
                url=url,
                events=events,
                remote_fulfillment=remote_fulfillment,
            )
        )
        logger.info(
            f"[Orchestrator] Registered webhook for {provider} -> {url} "
            f"(events={events}, remote={remote_fulfillment})"
        )
        return endpoint

    def _authorize_registration(self, provider: str, provider_key: Optional[str], operator: bool) -> None:
        if operator:
            return
        if provider == self.platform_wallet:
            raise ProviderAuthError("Registering the platform wallet requires the operator key")

        existing = self.store.get_endpoint(provider)
        if existing is None:
            raise ProviderAuthError("New webhook registrations require the operator key")
        if not provider_key or not hmac.compare_digest(existing.api_key, provider_key):
            logger.warning(f"[Orchestrator] Rejected re-registration of {provider}: provider key mismatch")
            raise ProviderAuthError("Replacing a registration requires the current X-Provider-Key")

    def _notify(self, endpoint: Optional[WebhookEndpoint], job: Job, event: WebhookEvent) -> None:
        if self.notifier is None or endpoint is None or not endpoint.subscribes_to(event):
            return
        self.notifier.enqueue(endpoint, job, event.value)
