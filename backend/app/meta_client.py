"""
Meta Marketing API client (Graph API).
Thin mutation wrapper used by the execution engine: budget updates, status
changes, and adset duplication. Any non-2xx response raises AdPlatformError
with the raw response body attached.
"""

import logging
from typing import Optional
import httpx

from app.exceptions import AdPlatformError
from app.models import Channel
from app.schemas import AdRef, AdSetRef, CampaignRef

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"

# Graph API error codes worth a friendlier message
_ERROR_MESSAGES = {
    190: "Meta access token is invalid or expired. Reconnect the Meta integration.",
    4: "Meta API rate limit reached (application). Try again later.",
    17: "Meta API rate limit reached (user). Try again later.",
}


class MetaAdsClient:
    def __init__(
        self,
        access_token: str,
        api_version: str = "v21.0",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport

    @property
    def base_url(self) -> str:
        return f"{GRAPH_BASE_URL}/{self.api_version}"

    async def _post(self, path: str, data: dict) -> dict:
        logger.info(f"Meta POST /{path} fields={sorted(data.keys())}")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
            resp = await http.post(
                f"{self.base_url}/{path}",
                data={**data, "access_token": self.access_token},
            )
        if resp.status_code >= 400:
            raise self._to_error(resp)
        return resp.json() if resp.content else {}

    @staticmethod
    def _to_error(resp: httpx.Response) -> AdPlatformError:
        body = resp.text
        message = f"Meta API error {resp.status_code}"
        try:
            err = resp.json().get("error", {})
        except ValueError:
            err = {}
        code = err.get("code")
        if code in _ERROR_MESSAGES:
            message = _ERROR_MESSAGES[code]
        elif code == 100:
            message = f"Meta rejected a parameter: {err.get('message', 'invalid field')}"
        elif err.get("message"):
            message = f"Meta API error {resp.status_code}: {err['message']}"
        logger.warning(f"{message} (body: {body[:500]})")
        return AdPlatformError(Channel.META.value, message, status_code=resp.status_code, body=body)

    async def update_budget(self, entity: CampaignRef | AdSetRef, minor_units: int) -> dict:
        """Set daily_budget in integer minor units (cents)."""
        return await self._post(entity.id, {"daily_budget": str(int(minor_units))})

    async def update_status(self, entity: CampaignRef | AdSetRef | AdRef, status: str) -> dict:
        return await self._post(entity.id, {"status": status})

    async def duplicate_adset(self, entity: AdSetRef) -> dict:
        """Copy an adset (with its ads). The copy starts PAUSED."""
        return await self._post(
            f"{entity.id}/copies",
            {"deep_copy": "true", "status_option": "PAUSED"},
        )
