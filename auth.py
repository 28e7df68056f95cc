"""
API key authentication dependency
"""

import hmac
import logging
from typing import Optional
from fastapi import Header, Request

from config.settings import settings
from utils.errors import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)


def extract_api_key(x_api_key: Optional[str], authorization: Optional[str]) -> Optional[str]:
    """Return the key from ``x-api-key`` or an ``Authorization: Bearer`` header."""
    if x_api_key:
        return x_api_key
    if isinstance(authorization, str) and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> str:
    """
    Static shared-secret check for every non-webhook endpoint.

    Raises:
        AuthenticationError: key missing or wrong (401)
        ConfigurationError: GPT_API_KEY is not configured on the server (500)
    """
    api_key = extract_api_key(x_api_key, authorization)
    if not api_key:
        logger.info(f"API key missing for {request.method} {request.url.path}")
        raise AuthenticationError("API key is required")

    valid_api_key = settings.gpt_api_key
    if not valid_api_key:
        logger.error("GPT_API_KEY is not set in environment variables")
        raise ConfigurationError("Server configuration error")

    if not hmac.compare_digest(api_key.encode(), valid_api_key.encode()):
        logger.warning(f"Invalid API key for {request.method} {request.url.path}")
        raise AuthenticationError("Invalid API key")

    return api_key
