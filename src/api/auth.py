"""
API authentication using the X-API-KEY header.
"""

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from src.config.settings import get_settings

api_key_header = APIKeyHeader(name="X-API-KEY", auto_error=False)


def configured_api_keys() -> list[str]:
    """Keys from the comma-separated ``API_KEYS`` setting, blanks dropped."""
    raw = get_settings().api_keys or ""
    return [k.strip() for k in raw.split(",") if k.strip()]


async def verify_api_key(api_key: str | None = Security(api_key_header)) -> str:
    """
    Verify the API key from the X-API-KEY header.

    With no keys configured every request is allowed (dev mode).

    Raises:
        HTTPException: 401 if the key is missing or unknown
    """
    valid_keys = configured_api_keys()
    if not valid_keys:
        return "dev-mode"

    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Provide X-API-KEY header.",
        )
    if api_key not in valid_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return api_key
