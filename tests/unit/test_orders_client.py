"""Unit tests for ShopifyOrdersClient (mocked)."""
import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock

from roas_core.shopify.exceptions import OrderNotFoundError, OrderSourceError
from roas_core.shopify.orders_client import PAGE_LIMIT, ShopifyOrdersClient


NEXT_URL = "https://test-shop.myshopify.com/admin/api/2023-10/orders.json?page_info=abc"


def _response(status=200, body=None, next_url=None, text=""):
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json.return_value = body or {}
    mock_response.text.return_value = text
    mock_response.links = {"next": {"url": next_url}} if next_url else {}
    mock_response.__aenter__.return_value = mock_response
    return mock_response


@pytest.fixture
def mock_session():
    """Mock aiohttp ClientSession."""
    return MagicMock()


@pytest.fixture
def orders_client(mock_session):
    return ShopifyOrdersClient(
        shop_domain="test-shop.myshopify.com",
        admin_access_token="shpat_fake_token",
        api_version="2023-10",
        session=mock_session,
    )


@pytest.mark.asyncio
async def test_fetch_orders_follows_link_header(orders_client, mock_session):
    """Pages are concatenated until the Link header has no next."""
    mock_session.get.side_effect = [
        _response(body={"orders": [{"id": 1}, {"id": 2}]}, next_url=NEXT_URL),
        _response(body={"orders": [{"id": 3}]}),
    ]

    orders = await orders_client.fetch_orders(since_id=0)

    assert [order["id"] for order in orders] == [1, 2, 3]
    assert mock_session.get.call_count == 2

    first_call, second_call = mock_session.get.call_args_list
    assert first_call.args[0].endswith("/admin/api/2023-10/orders.json")
    assert first_call.kwargs["params"]["status"] == "any"
    assert first_call.kwargs["params"]["since_id"] == 0
    assert first_call.kwargs["headers"]["X-Shopify-Access-Token"] == "shpat_fake_token"
    assert second_call.args[0] == NEXT_URL
    assert second_call.kwargs["params"] == {"limit": PAGE_LIMIT}


@pytest.mark.asyncio
async def test_fetch_orders_created_at_floor(orders_client, mock_session):
    """Without since_id the first request filters by created_at_min."""
    mock_session.get.return_value = _response(body={"orders": []})

    orders = await orders_client.fetch_orders(created_at_min="2023-12-01T00:00:00-08:00")

    assert orders == []
    params = mock_session.get.call_args.kwargs["params"]
    assert params["created_at_min"] == "2023-12-01T00:00:00-08:00"
    assert "since_id" not in params


@pytest.mark.asyncio
async def test_fetch_orders_http_error(orders_client, mock_session, caplog):
    """Non-200 raises OrderSourceError without leaking the token."""
    mock_session.get.return_value = _response(
        status=500, text="boom shpat_fake_token"
    )

    with pytest.raises(OrderSourceError) as exc_info:
        await orders_client.fetch_orders(since_id=10)

    assert exc_info.value.status == 500
    assert "shpat_fake_token" not in str(exc_info.value)
    assert "boom [REDACTED]" in caplog.text
    assert "shpat_fake_token" not in caplog.text


@pytest.mark.asyncio
async def test_fetch_orders_transport_error(orders_client, mock_session):
    mock_session.get.side_effect = aiohttp.ClientError("connection reset")

    with pytest.raises(OrderSourceError) as exc_info:
        await orders_client.fetch_orders(since_id=10)

    assert exc_info.value.status is None


@pytest.mark.asyncio
async def test_fetch_order_not_found(orders_client, mock_session):
    mock_session.get.return_value = _response(status=404, text="Not Found")

    with pytest.raises(OrderNotFoundError) as exc_info:
        await orders_client.fetch_order(42)

    assert exc_info.value.status == 404
    assert exc_info.value.resource_id == 42


@pytest.mark.asyncio
async def test_fetch_variant_and_inventory_item(orders_client, mock_session):
    mock_session.get.side_effect = [
        _response(body={"variant": {"id": 1, "inventory_item_id": 10}}),
        _response(body={"inventory_item": {"id": 10, "cost": "4.00"}}),
    ]

    variant = await orders_client.fetch_variant(1)
    item = await orders_client.fetch_inventory_item(variant["inventory_item_id"])

    assert item["cost"] == "4.00"
    urls = [call.args[0] for call in mock_session.get.call_args_list]
    assert urls[0].endswith("/variants/1.json")
    assert urls[1].endswith("/inventory_items/10.json")
