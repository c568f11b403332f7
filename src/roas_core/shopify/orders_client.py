"""Async Shopify Admin REST client for orders and cost metadata."""
import asyncio
import logging
from typing import AsyncIterator, Optional

import aiohttp

from ..config import redact_text
from .exceptions import OrderNotFoundError, OrderSourceError


ORDER_FIELDS = (
    "created_at,id,total_price,current_total_price,current_total_tax,total_tax,"
    "currency,order_number,refunds,note,note_attributes,tags,status,line_items"
)

PAGE_LIMIT = 250


class ShopifyOrdersClient:
    """Async client for the Shopify Admin REST orders and inventory endpoints.

    Pagination follows the Link header (rel="next"). Errors are not
    retried here; they surface as OrderSourceError so the calling job can
    leave its cursor untouched and retry on the next tick.
    """

    def __init__(
        self,
        shop_domain: str,
        admin_access_token: str,
        api_version: str,
        session: aiohttp.ClientSession,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize Shopify orders client.

        Args:
            shop_domain: e.g., "mystore.myshopify.com"
            admin_access_token: Offline access token (never logged)
            api_version: e.g., "2023-10"
            session: Injected aiohttp ClientSession
            logger: Optional logger instance
        """
        self.shop_domain = shop_domain
        self._access_token = admin_access_token
        self.api_version = api_version
        self.session = session
        self.logger = logger or logging.getLogger(__name__)

        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self._access_token,
        }

    def _redact(self, text: str) -> str:
        return redact_text(text, [self._access_token])

    async def _get(
        self, url: str, params: Optional[dict] = None
    ) -> tuple[dict, Optional[str]]:
        """GET a JSON resource.

        Returns:
            Parsed body and the rel="next" URL, if any

        Raises:
            OrderSourceError: On non-200 status or transport error
        """
        try:
            async with self.session.get(
                url, params=params, headers=self._headers()
            ) as response:
                if response.status != 200:
                    error_body = await response.text()
                    self.logger.error(
                        "Shopify API error (%s): %s",
                        response.status,
                        self._redact(error_body[:500]),
                    )
                    raise OrderSourceError(
                        f"Shopify request failed: HTTP {response.status}",
                        status=response.status,
                    )

                body = await response.json()
                next_link = response.links.get("next") if response.links else None
                next_url = str(next_link["url"]) if next_link else None
                return body, next_url

        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise OrderSourceError(f"Shopify network error: {exc}") from exc

    async def iter_order_pages(
        self,
        since_id: Optional[int] = None,
        created_at_min: Optional[str] = None,
        fields: str = ORDER_FIELDS,
    ) -> AsyncIterator[list[dict]]:
        """Yield pages of orders until the Link header has no next page.

        Args:
            since_id: Only orders with id greater than this
            created_at_min: ISO-8601 floor, used when no since_id is given
            fields: Comma-separated field selector
        """
        params: dict = {"status": "any", "limit": PAGE_LIMIT, "fields": fields}
        if since_id is not None:
            params["since_id"] = since_id
        elif created_at_min is not None:
            params["created_at_min"] = created_at_min

        url: Optional[str] = f"{self.base_url}/orders.json"
        page = 0

        while url:
            page += 1
            body, url = await self._get(url, params)
            orders = body.get("orders", [])
            self.logger.debug("Fetched orders page %s (%s orders)", page, len(orders))
            yield orders

            # Continuation URLs carry page_info; Shopify rejects filters beside it.
            params = {"limit": PAGE_LIMIT}

    async def fetch_orders(
        self,
        since_id: Optional[int] = None,
        created_at_min: Optional[str] = None,
        fields: str = ORDER_FIELDS,
    ) -> list[dict]:
        """Fetch and concatenate all order pages."""
        orders: list[dict] = []
        async for page in self.iter_order_pages(
            since_id=since_id, created_at_min=created_at_min, fields=fields
        ):
            orders.extend(page)

        self.logger.info(
            "Fetched %s orders (since_id=%s, created_at_min=%s)",
            len(orders),
            since_id,
            created_at_min,
        )
        return orders

    async def _get_resource(self, resource: str, resource_id: int, key: str) -> dict:
        try:
            body, _ = await self._get(f"{self.base_url}/{resource}/{resource_id}.json")
        except OrderSourceError as exc:
            if exc.status == 404:
                raise OrderNotFoundError(key, resource_id) from exc
            raise
        return body.get(key) or {}

    async def fetch_order(self, order_id: int) -> dict:
        """Fetch a single order by id (used by the line item backfill)."""
        return await self._get_resource("orders", order_id, "order")

    async def fetch_variant(self, variant_id: int) -> dict:
        return await self._get_resource("variants", variant_id, "variant")

    async def fetch_inventory_item(self, inventory_item_id: int) -> dict:
        return await self._get_resource("inventory_items", inventory_item_id, "inventory_item")
