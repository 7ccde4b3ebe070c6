"""Bearer-token admin check for the /api/admin routes."""
import logging
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mafia_insight.config import Settings, get_settings

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Resolve the caller's role from the Authorization header.

    Raises:
        HTTPException 401: no token, or a token nobody issued.
        HTTPException 403: a valid non-admin token.
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    token = credentials.credentials
    if token in settings.admin_api_tokens:
        return "admin"
    if token in settings.user_api_tokens:
        raise HTTPException(status_code=403, detail="Admin access required")

    logger.warning("Rejected request with unknown API token")
    raise HTTPException(status_code=401, detail="Authentication required")
