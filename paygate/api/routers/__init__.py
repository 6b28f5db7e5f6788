"""
API Routers package.
"""

from . import jobs, services, webhooks

__all__ = ["jobs", "services", "webhooks"]
