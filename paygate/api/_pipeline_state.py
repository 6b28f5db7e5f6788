"""
Pipeline state management for API integration.

Provides singleton access to the JobOrchestrator instance.
Initialized during FastAPI lifespan.

Usage:
    from ._pipeline_state import get_orchestrator, init_orchestrator

    # In lifespan:
    init_orchestrator(settings)

    # In routers:
    orchestrator = get_orchestrator()
"""

from typing import Optional

from paygate.config import Settings
from paygate.infra.webhook import WEBHOOK_SHUTDOWN_GRACE_SECONDS
from paygate.pipeline.orchestrator import JobOrchestrator


# Global orchestrator instance
_orchestrator: Optional[JobOrchestrator] = None


def init_orchestrator(settings: Settings) -> JobOrchestrator:
    """
    Initialize the orchestrator singleton.

    Called during FastAPI lifespan startup. An instance installed earlier
    with set_orchestrator() is kept.

    Args:
        settings: Resolved configuration

    Returns:
        Initialized JobOrchestrator
    """
    global _orchestrator

    if _orchestrator is not None:
        return _orchestrator

    _orchestrator = JobOrchestrator.create(settings)

    return _orchestrator


def set_orchestrator(orchestrator: Optional[JobOrchestrator]) -> None:
    """Install a preconfigured orchestrator (or clear it with None)."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> JobOrchestrator:
    """
    Get the orchestrator singleton.

    Raises:
        RuntimeError: If orchestrator not initialized
    """
    if _orchestrator is None:
        raise RuntimeError(
            "Orchestrator not initialized. "
            "Ensure init_orchestrator() is called during startup."
        )

    return _orchestrator


async def shutdown_orchestrator() -> None:
    """
    Shutdown the orchestrator.

    Called during FastAPI lifespan shutdown.
    Gives queued webhook deliveries a short grace period, then stops
    the worker.
    """
    global _orchestrator

    if _orchestrator is not None:
        if _orchestrator.notifier is not None:
            await _orchestrator.notifier.stop(grace=WEBHOOK_SHUTDOWN_GRACE_SECONDS)

        _orchestrator = None
