from typing import Optional

from fastapi import Security, HTTPException, status
from fastapi.security import APIKeyHeader
from shared.config import settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> Optional[str]:
    """Dashboard access check. Open when no API keys are configured."""
    if not settings.API_KEYS:
        return None
    if api_key not in settings.API_KEYS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
    return api_key
