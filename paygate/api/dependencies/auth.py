"""
Header authentication dependencies.

Two independent keys:
- X-API-Key: operator key for all routers, enforced only when
  API_AUTH_ENABLED=true (checked against API_KEY)
- X-Provider-Key: per-counterparty key presented on completion
  callbacks; presence is checked here, the value is matched against the
  registered endpoint by the orchestrator
"""

import hmac
import os
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from paygate.config import env_bool

from ..errors import error_detail

# Environment configuration
API_AUTH_ENABLED = env_bool("API_AUTH_ENABLED")
API_KEY = os.getenv("API_KEY", "")

_CHALLENGE = {"WWW-Authenticate": "ApiKey"}

operator_key_header = APIKeyHeader(
    name="X-API-Key",
    auto_error=False,
    description="Operator key (required when API_AUTH_ENABLED=true)",
)

provider_key_header = APIKeyHeader(
    name="X-Provider-Key",
    auto_error=False,
    description="Counterparty key returned by POST /webhooks",
)


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error_detail("UNAUTHORIZED", message),
        headers=_CHALLENGE,
    )


async def verify_api_key(
    api_key: Optional[str] = Security(operator_key_header),
) -> Optional[str]:
    """
    Check the operator key.

    Returns:
        The key, or None while API_AUTH_ENABLED is off

    Raises:
        HTTPException: 401 if auth is on and the key is missing or wrong
    """
    if not API_AUTH_ENABLED:
        return None

    if not api_key:
        raise _unauthorized("Missing API key. Provide X-API-Key header.")

    # An unset API_KEY rejects everything rather than accepting ""
    if not API_KEY or not hmac.compare_digest(api_key, API_KEY):
        raise _unauthorized("Invalid API key")

    return api_key


async def operator_access(
    api_key: Optional[str] = Security(operator_key_header),
) -> bool:
    """
    True when the request carries the configured operator key.

    Checked even while API_AUTH_ENABLED is off, for operations that
    always need the operator (webhook registration).
    """
    return bool(API_KEY and api_key and hmac.compare_digest(api_key, API_KEY))


async def optional_provider_key(
    provider_key: Optional[str] = Security(provider_key_header),
) -> Optional[str]:
    return provider_key


async def require_provider_key(
    provider_key: Optional[str] = Security(provider_key_header),
) -> str:
    """Completion callbacks must carry X-Provider-Key (401 otherwise)."""
    if not provider_key:
        raise _unauthorized("Missing X-Provider-Key header")
    return provider_key
