"""
API Dependencies package.

Cross-cutting concerns like authentication.
"""

from .auth import (
    API_AUTH_ENABLED,
    operator_access,
    optional_provider_key,
    require_provider_key,
    verify_api_key,
)

__all__ = [
    "verify_api_key",
    "operator_access",
    "optional_provider_key",
    "require_provider_key",
    "API_AUTH_ENABLED",
]
