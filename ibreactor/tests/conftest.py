"""
Shared fixtures: a started event bus and a gateway on a mocked socket client
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from eventkit import Event as KitEvent

from ibreactor.core.event_bus import EventBus
from ibreactor.core.gateway import Gateway, GatewayConfig
from ibreactor.core.ids import IdAllocator
from ibreactor.core.synchronous import SyncClient


@pytest_asyncio.fixture
async def event_bus():
    """Create and start an event bus for testing"""
    bus = EventBus("test")
    await bus.start()
    yield bus
    await bus.stop()


@pytest.fixture
def mock_client():
    """ib_async socket client stand-in; request methods do nothing by default"""
    client = MagicMock()
    client.apiEnd = KitEvent('apiEnd')
    client.apiError = KitEvent('apiError')
    client.isConnected.return_value = True
    client.serverVersion.return_value = 176
    client.connectAsync = AsyncMock()
    return client


@pytest.fixture
def ids():
    # First ticker id 42, first order id 7, first request id 9
    return IdAllocator(ticker_start=41, order_start=6, request_start=8)


@pytest_asyncio.fixture
async def gateway(event_bus, ids, mock_client):
    """Gateway wired to the mocked client"""
    config = GatewayConfig(host="127.0.0.1", port=4002, client_id=7)
    return Gateway(config, event_bus=event_bus, ids=ids, client=mock_client)


@pytest_asyncio.fixture
async def sync_client(gateway):
    return SyncClient(gateway, timeout=2.0)
