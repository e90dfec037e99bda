"""
Authentication — JWT (users) and API-key (programmatic) auth.

- Users: Authorization: Bearer <jwt>; the acting user id is the token's `sub`.
- Programmatic: Authorization: Bearer <API_KEY>; acts as API_KEY_USER_ID.

In development with no API_KEY set, auth is skipped and requests act as DEV_USER_ID.
Workspace permissions are checked per request by the services, not here.
"""

import logging
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import get_settings
from app.services.auth_service import decode_access_token

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

DEV_USER_ID = "dev-user"
API_KEY_USER_ID = "api-key"


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """
    Accept either JWT (user) or API_KEY (programmatic).
    Returns the acting user id used for workspace role checks and audit rows.
    """
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        if not credentials:
            return DEV_USER_ID

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )

    token = credentials.credentials

    # Try JWT first (user login)
    payload = decode_access_token(token)
    if payload and payload.get("sub"):
        return str(payload["sub"])

    # Fall back to API_KEY
    if api_key and token == api_key:
        return API_KEY_USER_ID

    if not api_key:
        return DEV_USER_ID

    raise HTTPException(
        status_code=401,
        detail="Invalid or expired token. Please log in again.",
    )


async def require_auth(user_id: str = Depends(get_current_user_id)) -> str:
    """Router-level guard; resolves the same identity as get_current_user_id."""
    return user_id
