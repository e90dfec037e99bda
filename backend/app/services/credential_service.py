"""
Credential Service — Per-workspace channel credentials for the execution engine.
Decrypts IntegrationSecret rows and refreshes the Google OAuth token when it is
about to expire. Resolved once per execution and handed to the platform clients.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.config import get_settings
from app.crypto import decrypt_json, encrypt_json
from app.exceptions import ConfigurationError
from app.google_ads_client import GoogleAdsClient
from app.meta_client import MetaAdsClient
from app.models import IntegrationSecret, IntegrationType
from app.utils import utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)


async def load_integration_secret(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    integration_type: IntegrationType,
) -> tuple[Optional[IntegrationSecret], Optional[dict]]:
    result = await db.execute(
        select(IntegrationSecret).where(
            IntegrationSecret.workspace_id == workspace_id,
            IntegrationSecret.integration_type == integration_type.value,
        )
    )
    row = result.scalar_one_or_none()
    if not row:
        return None, None
    return row, decrypt_json(row.encrypted_json)


async def save_integration_secret(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    integration_type: IntegrationType,
    data: dict,
) -> IntegrationSecret:
    """Upsert the encrypted JSON blob for one integration."""
    row, _ = await load_integration_secret(db, workspace_id, integration_type)
    payload = encrypt_json(data)
    if row:
        row.encrypted_json = payload
    else:
        row = IntegrationSecret(
            workspace_id=workspace_id,
            integration_type=integration_type.value,
            encrypted_json=payload,
        )
        db.add(row)
    await db.flush()
    return row


async def refresh_google_access_token(refresh_token: str) -> dict:
    """
    Exchange a refresh token for a new access token via Google OAuth.
    Returns dict with access_token, expires_in, token_type.
    """
    settings = get_settings()
    async with httpx.AsyncClient() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=settings.external_call_timeout_seconds,
        )
        response.raise_for_status()
        return response.json()


def _token_is_expired(data: dict) -> bool:
    expires_at = data.get("expiresAt")
    if not expires_at:
        # No expiry tracked — refresh if we can
        return bool(data.get("refreshToken"))
    expires = datetime.fromisoformat(expires_at)
    if expires.tzinfo is not None:
        expires = expires.astimezone(timezone.utc).replace(tzinfo=None)
    return utcnow() >= expires - REFRESH_BUFFER


async def ensure_fresh_google_token(db: AsyncSession, workspace_id: uuid.UUID, data: dict) -> dict:
    """Refresh the Google access token if it expires within the buffer. Returns the (possibly updated) data."""
    if not data.get("refreshToken") or not _token_is_expired(data):
        return data

    logger.info(f"Google Ads token expiring for workspace {workspace_id}, refreshing...")
    try:
        token_data = await refresh_google_access_token(data["refreshToken"])
    except httpx.HTTPStatusError as e:
        logger.error(f"Google token refresh failed for workspace {workspace_id}: {e.response.status_code} — {e.response.text}")
        return data
    except httpx.HTTPError as e:
        logger.error(f"Google token refresh failed for workspace {workspace_id}: {e}")
        return data

    expires_in = token_data.get("expires_in", 3600)
    data = {
        **data,
        "accessToken": token_data["access_token"],
        "expiresAt": (utcnow() + timedelta(seconds=expires_in)).isoformat(),
    }
    if "refresh_token" in token_data:
        data["refreshToken"] = token_data["refresh_token"]
    await save_integration_secret(db, workspace_id, IntegrationType.GOOGLE_ADS, data)
    logger.info(f"Google Ads token refreshed for workspace {workspace_id}, expires in {expires_in}s")
    return data


@dataclass
class ChannelCredentials:
    """Resolved credentials for one workspace. Builds platform clients on demand."""
    meta_access_token: Optional[str] = None
    google_access_token: Optional[str] = None
    google_login_customer_id: Optional[str] = None

    def meta_client(self) -> MetaAdsClient:
        if not self.meta_access_token:
            raise ConfigurationError("Meta integration not connected for this workspace")
        settings = get_settings()
        return MetaAdsClient(
            access_token=self.meta_access_token,
            api_version=settings.meta_api_version,
            timeout=settings.external_call_timeout_seconds,
        )

    def google_client(self, customer_id: str) -> GoogleAdsClient:
        settings = get_settings()
        if not self.google_access_token:
            raise ConfigurationError("Google Ads integration not connected for this workspace")
        if not settings.google_developer_token:
            raise ConfigurationError("GOOGLE_DEVELOPER_TOKEN not configured")
        return GoogleAdsClient(
            access_token=self.google_access_token,
            developer_token=settings.google_developer_token,
            customer_id=customer_id,
            login_customer_id=self.google_login_customer_id,
            api_version=settings.google_ads_api_version,
            timeout=settings.external_call_timeout_seconds,
        )


async def resolve_channel_credentials(db: AsyncSession, workspace_id: uuid.UUID) -> ChannelCredentials:
    creds = ChannelCredentials()

    _, meta = await load_integration_secret(db, workspace_id, IntegrationType.META)
    if meta:
        creds.meta_access_token = meta.get("accessToken")

    _, google = await load_integration_secret(db, workspace_id, IntegrationType.GOOGLE_ADS)
    if google:
        google = await ensure_fresh_google_token(db, workspace_id, google)
        creds.google_access_token = google.get("accessToken")
        creds.google_login_customer_id = google.get("loginCustomerId")

    return creds
