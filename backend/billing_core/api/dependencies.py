"""
FastAPI dependencies shared by the routes.

The tenant context comes only from the verified session token; it is
returned to the route and passed on explicitly.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from billing_core.auth.claims import SessionTokenError, TenantContext, decode_session_token
from billing_core.config.settings import BillingSettings, get_settings

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


def get_tenant_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    settings: BillingSettings = Depends(get_settings),
) -> TenantContext:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_session_token(credentials.credentials, settings.jwt_secret)
    except SessionTokenError as e:
        logger.warning("Session token rejected", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
            headers={"WWW-Authenticate": "Bearer"},
        )
