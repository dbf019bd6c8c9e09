"""Shopify Admin REST API client for draft orders and orders."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from r3_checkout.connectors.base import CommercePlatform
from r3_checkout.exceptions import CommercePlatformError
from r3_checkout.orders import is_draft_for_payment_intent

logger = logging.getLogger(__name__)

DRAFT_LOOKUP_FIELDS = "id,tags,note_attributes,status"


class ShopifyAdminClient(CommercePlatform):
    """Shopify Admin API connector.

    5xx and 429 responses are raised as httpx.HTTPStatusError so the
    resilience layer treats them as transient; other 4xx responses become
    CommercePlatformError and are not retried.
    """

    def __init__(
        self,
        store_domain: str,
        access_token: str,
        api_version: str = "2024-01",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store_domain = store_domain
        self._client = httpx.AsyncClient(
            base_url=f"https://{store_domain}/admin/api/{api_version}",
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        response = await self._client.request(method, path, json=json, params=params)
        if response.status_code >= 500 or response.status_code == 429:
            response.raise_for_status()
        if response.status_code >= 400:
            logger.error(
                "Shopify %s %s failed with %s",
                method,
                path,
                response.status_code,
                extra={"response_body": response.text[:500]},
            )
            raise CommercePlatformError(
                f"Shopify request failed: {method} {path}",
                status_code=response.status_code,
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = await self._send(method, path, json=json, params=params)
        if not response.content:
            return {}
        return response.json()

    async def create_draft_order(self, draft_order: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request("POST", "/draft_orders.json", json={"draft_order": draft_order})
        return data.get("draft_order", {})

    async def find_draft_order(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        """Scan open draft orders, following cursor pagination, for the intent's note attribute."""
        params: Dict[str, Any] = {"status": "open", "limit": 250, "fields": DRAFT_LOOKUP_FIELDS}
        while True:
            response = await self._send("GET", "/draft_orders.json", params=params)
            for draft in response.json().get("draft_orders", []):
                if is_draft_for_payment_intent(draft, payment_intent_id):
                    return draft
            next_url = response.links.get("next", {}).get("url")
            page_info = httpx.URL(next_url).params.get("page_info") if next_url else None
            if not page_info:
                return None
            # Shopify rejects filters other than limit and fields alongside page_info
            params = {"limit": 250, "fields": DRAFT_LOOKUP_FIELDS, "page_info": page_info}

    async def update_draft_order(self, draft_order_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"draft_order": {"id": draft_order_id, **changes}}
        data = await self._request("PUT", f"/draft_orders/{draft_order_id}.json", json=payload)
        return data.get("draft_order", {})

    async def complete_draft_order(self, draft_order_id: str, payment_pending: bool = False) -> Dict[str, Any]:
        data = await self._request(
            "PUT",
            f"/draft_orders/{draft_order_id}/complete.json",
            params={"payment_pending": "true" if payment_pending else "false"},
        )
        return data.get("draft_order", {})

    async def cancel_draft_order(
        self,
        draft_order_id: str,
        tags: List[str],
        note: str,
    ) -> Dict[str, Any]:
        # Draft orders have no cancel endpoint; the tags and note keep the
        # audit trail and stop fulfilment.
        return await self.update_draft_order(
            draft_order_id,
            {"tags": ",".join(tags), "note": note},
        )

    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request("POST", "/orders.json", json={"order": order})
        return data.get("order", {})

    async def close(self) -> None:
        await self._client.aclose()
