"""
Job Store.

SQLite persistence for jobs, webhook endpoints and webhook deliveries.

Job mutation happens only through the four transition methods
(mark_paid, mark_in_progress, mark_completed, mark_failed). Each is one
conditional UPDATE guarded by the allowed prior states, so concurrent
callers racing on the same job get exactly one winner; the losers see
ConflictError.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Optional, Sequence

from .entities import (
    MAX_OUTPUT_BYTES,
    DeliveryAttempt,
    DeliveryState,
    Job,
    JobState,
    WebhookEndpoint,
    now_iso,
)
from .errors import (
    ConflictError,
    InvalidOperationError,
    JobNotFoundError,
    PaymentReusedError,
)

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT = 5.0


class JobStore:
    """
    SQLite-backed store.

    Every call opens its own connection, so one store can be shared
    between the event loop and worker threads. Use a file path (not
    ":memory:") since each connection would otherwise see its own
    empty database.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = DEFAULT_BUSY_TIMEOUT):
        """
        Initialize the store and create tables if needed.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds a writer waits for the database lock
        """
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get an autocommit connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)}")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read-only access."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for write transactions.

        BEGIN IMMEDIATE takes the write lock up front, so a concurrent
        writer waits on the busy timeout instead of failing on a stale
        snapshot.
        """
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_uuid TEXT NOT NULL UNIQUE,
                    service_key TEXT NOT NULL,
                    requester TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    input_data TEXT NOT NULL,
                    output_data TEXT,
                    price TEXT NOT NULL,
                    state TEXT NOT NULL,
                    payment_tx_hash TEXT UNIQUE,
                    failure_reason TEXT,
                    created_at TEXT NOT NULL,
                    paid_at TEXT,
                    started_at TEXT,
                    completed_at TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_state
                ON jobs (state, created_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_endpoints (
                    provider TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    events TEXT NOT NULL DEFAULT '[]',
                    remote_fulfillment INTEGER NOT NULL DEFAULT 0,
                    secret TEXT NOT NULL,
                    api_key TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_deliveries (
                    delivery_id TEXT PRIMARY KEY,
                    job_uuid TEXT NOT NULL,
                    event TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    state TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_status INTEGER,
                    last_error TEXT,
                    next_retry_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (job_uuid) REFERENCES jobs(job_uuid)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_deliveries_job
                ON webhook_deliveries (job_uuid, created_at)
            """)

    # =========================================================================
    # Job Operations
    # =========================================================================

    def create_job(self, job: Job) -> Job:
        """Insert a new pending job and assign its internal id."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO jobs
                (job_uuid, service_key, requester, provider, input_data, output_data,
                 price, state, payment_tx_hash, failure_reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.service_key,
                    job.requester,
                    job.provider,
                    json.dumps(job.input_data),
                    None,
                    str(job.price),
                    JobState.PENDING.value,
                    None,
                    None,
                    job.created_at,
                ),
            )
            job.id = cursor.lastrowid
        job.state = JobState.PENDING
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by its public ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_uuid = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)

    def require_job(self, job_id: str) -> Job:
        """Get a job or raise JobNotFoundError."""
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert a database row to a Job entity."""
        return Job(
            id=row["id"],
            job_id=row["job_uuid"],
            service_key=row["service_key"],
            requester=row["requester"],
            provider=row["provider"],
            input_data=json.loads(row["input_data"]),
            output_data=json.loads(row["output_data"]) if row["output_data"] else None,
            price=Decimal(row["price"]),
            state=JobState(row["state"]),
            payment_tx_hash=row["payment_tx_hash"],
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            paid_at=row["paid_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    def list_jobs_by_state(self, state: JobState, limit: int = 100) -> list[Job]:
        """List jobs in a state, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE state = ? ORDER BY created_at ASC LIMIT ?",
                (state.value, limit),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _apply_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        sql: str,
        params: tuple,
        allowed: Sequence[JobState],
    ) -> Job:
        """
        Run one conditional UPDATE and return the updated job.

        ``sql`` ends in ``WHERE job_uuid = ? AND state IN (...)``; params
        are followed by the job id and the allowed prior states.

        Raises:
            JobNotFoundError: If job doesn't exist
            ConflictError: If job is not in an allowed prior state
        """
        cursor = conn.execute(sql, (*params, job_id, *(s.value for s in allowed)))

        if cursor.rowcount == 0:
            row = conn.execute(
                "SELECT state FROM jobs WHERE job_uuid = ?",
                (job_id,),
            ).fetchone()

            if row is None:
                raise JobNotFoundError(job_id)

            raise ConflictError(
                job_id,
                expected_status="|".join(s.value for s in allowed),
                actual_status=row["state"],
            )

        row = conn.execute(
            "SELECT * FROM jobs WHERE job_uuid = ?",
            (job_id,),
        ).fetchone()
        return self._row_to_job(row)

    def mark_paid(self, job_id: str, tx_hash: str) -> Job:
        """
        Atomically transition pending -> paid and record the payment.

        Raises:
            JobNotFoundError: If job doesn't exist
            ConflictError: If job is not pending
            PaymentReusedError: If tx_hash already paid for another job
        """
        tx_hash = tx_hash.lower()
        try:
            with self._transaction() as conn:
                job = self._apply_transition(
                    conn,
                    job_id,
                    """
                    UPDATE jobs
                    SET state = ?, payment_tx_hash = ?, paid_at = ?
                    WHERE job_uuid = ? AND state IN (?)
                    """,
                    (JobState.PAID.value, tx_hash, now_iso()),
                    (JobState.PENDING,),
                )
        except sqlite3.IntegrityError as e:
            raise PaymentReusedError(job_id, tx_hash) from e

        logger.info(f"[JobStore] {job_id} pending -> paid (tx={tx_hash})")
        return job

    def mark_in_progress(self, job_id: str) -> Job:
        """
        Atomically transition paid -> in_progress.

        Raises:
            JobNotFoundError: If job doesn't exist
            ConflictError: If job is not paid
        """
        with self._transaction() as conn:
            job = self._apply_transition(
                conn,
                job_id,
                """
                UPDATE jobs
                SET state = ?, started_at = ?
                WHERE job_uuid = ? AND state IN (?)
                """,
                (JobState.IN_PROGRESS.value, now_iso()),
                (JobState.PAID,),
            )

        logger.info(f"[JobStore] {job_id} paid -> in_progress")
        return job

    def mark_completed(self, job_id: str, output: dict) -> Job:
        """
        Atomically transition paid|in_progress -> completed with output.

        Raises:
            JobNotFoundError: If job doesn't exist
            ConflictError: If job is not paid or in_progress
            InvalidOperationError: If the output holds NaN/Infinity or is too large
        """
        try:
            serialized = json.dumps(output, allow_nan=False)
        except ValueError as e:
            raise InvalidOperationError(f"Output for job {job_id} is not valid JSON: {e}") from e
        if len(serialized.encode("utf-8")) > MAX_OUTPUT_BYTES:
            raise InvalidOperationError(
                f"Output for job {job_id} exceeds {MAX_OUTPUT_BYTES} bytes"
            )

        with self._transaction() as conn:
            job = self._apply_transition(
                conn,
                job_id,
                """
                UPDATE jobs
                SET state = ?, output_data = ?, completed_at = ?
                WHERE job_uuid = ? AND state IN (?, ?)
                """,
                (JobState.COMPLETED.value, serialized, now_iso()),
                (JobState.PAID, JobState.IN_PROGRESS),
            )

        logger.info(f"[JobStore] {job_id} -> completed")
        return job

    def mark_failed(self, job_id: str, reason: str, detail: str) -> Job:
        """
        Atomically transition paid|in_progress -> failed.

        The output records {"error": {"code": reason, "message": detail}}.

        Raises:
            JobNotFoundError: If job doesn't exist
            ConflictError: If job is not paid or in_progress
        """
        output = {"error": {"code": reason, "message": detail}}

        with self._transaction() as conn:
            job = self._apply_transition(
                conn,
                job_id,
                """
                UPDATE jobs
                SET state = ?, failure_reason = ?, output_data = ?, completed_at = ?
                WHERE job_uuid = ? AND state IN (?, ?)
                """,
                (JobState.FAILED.value, reason, json.dumps(output), now_iso()),
                (JobState.PAID, JobState.IN_PROGRESS),
            )

        logger.info(f"[JobStore] {job_id} -> failed ({reason})")
        return job

    # =========================================================================
    # Webhook Endpoint Operations
    # =========================================================================

    def upsert_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        """Register or replace the endpoint for a provider address."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO webhook_endpoints
                (provider, url, events, remote_fulfillment, secret, api_key, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider) DO UPDATE SET
                    url = excluded.url,
                    events = excluded.events,
                    remote_fulfillment = excluded.remote_fulfillment,
                    secret = excluded.secret,
                    api_key = excluded.api_key,
                    updated_at = excluded.updated_at
                """,
                (
                    endpoint.provider,
                    endpoint.url,
                    json.dumps(endpoint.events),
                    1 if endpoint.remote_fulfillment else 0,
                    endpoint.secret,
                    endpoint.api_key,
                    endpoint.created_at,
                    endpoint.updated_at,
                ),
            )
            row = conn.execute(
                "SELECT created_at FROM webhook_endpoints WHERE provider = ?",
                (endpoint.provider,),
            ).fetchone()
        endpoint.created_at = row["created_at"]
        return endpoint

    def get_endpoint(self, provider: str) -> Optional[WebhookEndpoint]:
        """Get the endpoint registered for a provider address."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM webhook_endpoints WHERE provider = ?",
                (provider.lower(),),
            ).fetchone()

        if row is None:
            return None

        return WebhookEndpoint(
            provider=row["provider"],
            url=row["url"],
            events=json.loads(row["events"]),
            remote_fulfillment=bool(row["remote_fulfillment"]),
            secret=row["secret"],
            api_key=row["api_key"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # =========================================================================
    # Webhook Delivery Operations
    # =========================================================================

    def create_delivery(self, delivery: DeliveryAttempt) -> DeliveryAttempt:
        """Record a new delivery before its first attempt."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO webhook_deliveries
                (delivery_id, job_uuid, event, endpoint, state, attempts,
                 last_status, last_error, next_retry_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    delivery.delivery_id,
                    delivery.job_id,
                    delivery.event,
                    delivery.endpoint,
                    delivery.state.value,
                    delivery.attempts,
                    delivery.last_status,
                    delivery.last_error,
                    delivery.next_retry_at,
                    delivery.created_at,
                    delivery.updated_at,
                ),
            )
        return delivery

    def update_delivery(self, delivery: DeliveryAttempt) -> DeliveryAttempt:
        """Persist the attempt counters and state of a delivery."""
        delivery.updated_at = now_iso()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE webhook_deliveries
                SET state = ?, attempts = ?, last_status = ?, last_error = ?,
                    next_retry_at = ?, updated_at = ?
                WHERE delivery_id = ?
                """,
                (
                    delivery.state.value,
                    delivery.attempts,
                    delivery.last_status,
                    delivery.last_error,
                    delivery.next_retry_at,
                    delivery.updated_at,
                    delivery.delivery_id,
                ),
            )
            if cursor.rowcount == 0:
                raise InvalidOperationError(f"Delivery not found: {delivery.delivery_id}")
        return delivery

    def get_delivery(self, delivery_id: str) -> Optional[DeliveryAttempt]:
        """Get a delivery by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM webhook_deliveries WHERE delivery_id = ?",
                (delivery_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_delivery(row)

    def list_deliveries(self, job_id: str) -> list[DeliveryAttempt]:
        """List deliveries for a job, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM webhook_deliveries
                WHERE job_uuid = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (job_id,),
            ).fetchall()
        return [self._row_to_delivery(row) for row in rows]

    def _row_to_delivery(self, row: sqlite3.Row) -> DeliveryAttempt:
        """Convert a database row to a DeliveryAttempt entity."""
        return DeliveryAttempt(
            delivery_id=row["delivery_id"],
            job_id=row["job_uuid"],
            event=row["event"],
            endpoint=row["endpoint"],
            state=DeliveryState(row["state"]),
            attempts=row["attempts"],
            last_status=row["last_status"],
            last_error=row["last_error"],
            next_retry_at=row["next_retry_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
