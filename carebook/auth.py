import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def require_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Restrict an endpoint to platform operators (dispute resolution, manual release).

    Operators authenticate with the static OPERATOR_API_TOKEN bearer token.
    """
    if not config.OPERATOR_API_TOKEN:
        logger.error("❌ OPERATOR_API_TOKEN not configured; operator endpoints disabled")
        raise HTTPException(status_code=503, detail="Operator access not configured")

    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Missing operator token")

    if not hmac.compare_digest(credentials.credentials, config.OPERATOR_API_TOKEN):
        logger.warning("🚫 SECURITY: invalid operator token presented")
        raise HTTPException(status_code=403, detail="Invalid operator token")

    return "operator"
