"""
Google Ads REST client.
Budget and status mutations via the :mutate endpoints. Budgets are in micros.
Any non-2xx response raises AdPlatformError with the raw response body attached.
"""

import logging
from typing import Optional
import httpx

from app.exceptions import AdPlatformError
from app.models import Channel
from app.schemas import AdGroupRef, CampaignRef

logger = logging.getLogger(__name__)

GOOGLE_ADS_BASE_URL = "https://googleads.googleapis.com"


def normalize_customer_id(customer_id: str) -> str:
    return customer_id.replace("-", "").strip()


class GoogleAdsClient:
    def __init__(
        self,
        access_token: str,
        developer_token: str,
        customer_id: str,
        login_customer_id: Optional[str] = None,
        api_version: str = "v17",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.developer_token = developer_token
        self.customer_id = normalize_customer_id(customer_id)
        self.login_customer_id = normalize_customer_id(login_customer_id) if login_customer_id else None
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport

    @property
    def headers(self) -> dict[str, str]:
        h = {
            "Authorization": f"Bearer {self.access_token}",
            "developer-token": self.developer_token,
            "Content-Type": "application/json",
        }
        if self.login_customer_id:
            h["login-customer-id"] = self.login_customer_id
        return h

    async def _mutate(self, resource: str, operations: list[dict]) -> dict:
        url = f"{GOOGLE_ADS_BASE_URL}/{self.api_version}/customers/{self.customer_id}/{resource}:mutate"
        logger.info(f"Google Ads mutate {resource} ({len(operations)} operations) for customer {self.customer_id}")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
            resp = await http.post(url, json={"operations": operations}, headers=self.headers)
        if resp.status_code >= 400:
            raise self._to_error(resp)
        return resp.json() if resp.content else {}

    @staticmethod
    def _to_error(resp: httpx.Response) -> AdPlatformError:
        body = resp.text
        message = f"Google Ads API error {resp.status_code}"
        try:
            err = resp.json().get("error", {})
        except ValueError:
            err = {}
        if resp.status_code == 401:
            message = "Google Ads access token is invalid or expired. Reconnect the Google Ads integration."
        elif err.get("message"):
            message = f"Google Ads API error {resp.status_code}: {err['message']}"
        logger.warning(f"{message} (body: {body[:500]})")
        return AdPlatformError(Channel.GOOGLE.value, message, status_code=resp.status_code, body=body)

    def campaign_resource(self, campaign_id: str) -> str:
        return f"customers/{self.customer_id}/campaigns/{campaign_id}"

    def ad_group_resource(self, ad_group_id: str) -> str:
        return f"customers/{self.customer_id}/adGroups/{ad_group_id}"

    async def update_budget(self, budget_resource_name: str, amount_micros: int) -> dict:
        return await self._mutate("campaignBudgets", [{
            "updateMask": "amountMicros",
            "update": {"resourceName": budget_resource_name, "amountMicros": str(int(amount_micros))},
        }])

    async def update_status(self, entity: CampaignRef | AdGroupRef, status: str) -> dict:
        """status is ENABLED or PAUSED."""
        if isinstance(entity, CampaignRef):
            resource, name = "campaigns", self.campaign_resource(entity.id)
        elif isinstance(entity, AdGroupRef):
            resource, name = "adGroups", self.ad_group_resource(entity.id)
        else:
            raise ValueError(f"Google Ads status update does not support level '{entity.level}'")
        return await self._mutate(resource, [{
            "updateMask": "status",
            "update": {"resourceName": name, "status": status},
        }])
