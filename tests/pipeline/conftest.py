"""
Pipeline Test Fixtures.

Base fixtures (store, create_job, register_remote, orchestrator) come
from tests/conftest.py. This module adds assertion helpers shared by the
store and orchestrator tests.
"""

from paygate.pipeline import Job, JobState, JobStore


# =============================================================================
# Assertion Helpers
# =============================================================================


def assert_job_state(store: JobStore, job_id: str, expected: JobState) -> Job:
    """Reload a job and assert its state."""
    job = store.get_job(job_id)
    assert job is not None, f"Job {job_id} not found"
    assert job.state == expected, f"Expected {expected.value}, got {job.state.value}"
    return job


def assert_no_output(store: JobStore, job_id: str) -> None:
    """A failed job keeps only its error record, never partial output."""
    job = store.get_job(job_id)
    assert job.output_data is None or set(job.output_data) == {"error"}
