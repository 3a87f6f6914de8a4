"""
API authentication using X-API-KEY header.

Each configured key maps to a client id (``API_KEYS="key:client,..."``);
the client id owns the jobs it submits.
"""

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from race_backtest.config.settings import get_settings

DEV_CLIENT_ID = "dev-client"

# API key header scheme
api_key_header = APIKeyHeader(name="X-API-KEY", auto_error=False)


async def verify_api_key(api_key: str | None = Security(api_key_header)) -> str:
    """
    Verify API key from X-API-KEY header.

    Args:
        api_key: API key from header

    Returns:
        The client id the key belongs to

    Raises:
        HTTPException: If API key is missing or invalid
    """
    settings = get_settings()
    clients = settings.api_key_clients

    # If no API keys configured, allow all requests (dev mode)
    if not clients:
        return DEV_CLIENT_ID

    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Provide X-API-KEY header.",
        )

    client_id = clients.get(api_key)
    if client_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    return client_id


async def require_backtest_access(client_id: str = Depends(verify_api_key)) -> str:
    """Enforce the BACKTEST_ALLOWED_CLIENTS allow-list, when configured."""
    allowed = get_settings().allowed_clients
    if allowed is not None and client_id not in allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Backtesting is not enabled for this client",
        )
    return client_id
