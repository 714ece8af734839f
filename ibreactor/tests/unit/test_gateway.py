"""
Unit tests for Gateway - connection handling and outbound requests
"""

import asyncio

import pytest
from ib_async import MarketOrder, Stock

from ibreactor.core.event_bus import EventTypes
from ibreactor.core.gateway import Gateway, GatewayConfig, NotConnectedError


async def wait_until(condition, timeout: float = 1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest.fixture
def spy():
    return Stock('SPY', 'SMART', 'USD')


class TestGatewayConfig:

    def test_defaults(self):
        config = GatewayConfig()
        assert config.port == 4002
        assert config.trading_mode == "paper"
        assert config.ticker_id_start != config.request_id_start

    def test_from_env_live(self, monkeypatch):
        monkeypatch.setenv('TRADING_MODE', 'live')
        monkeypatch.setenv('IB_GATEWAY_HOST', 'gateway.local')
        monkeypatch.setenv('IB_GATEWAY_PORT_LIVE', '7496')
        monkeypatch.setenv('IB_CLIENT_ID', '3')
        monkeypatch.setenv('REQUEST_TIMEOUT', '5')

        config = GatewayConfig.from_env()

        assert config.host == 'gateway.local'
        assert config.port == 7496
        assert config.client_id == 3
        assert config.request_timeout == 5.0

    def test_from_env_overrides(self, monkeypatch):
        monkeypatch.setenv('TRADING_MODE', 'paper')
        monkeypatch.setenv('IB_GATEWAY_PORT', '4002')
        monkeypatch.setenv('IB_CLIENT_ID', '4')

        config = GatewayConfig.from_env(port=7497, client_id=None)

        assert config.port == 7497
        assert config.client_id == 4


class TestConnection:

    @pytest.mark.asyncio
    async def test_connect(self, gateway, mock_client):
        await gateway.connect()

        mock_client.connectAsync.assert_awaited_once_with("127.0.0.1", 4002, 7, 20.0)
        assert gateway.is_connected()
        assert gateway.connection_time() is not None
        mock_client.setServerLogLevel.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_sets_server_log_level(self, event_bus, ids, mock_client):
        config = GatewayConfig(server_log_level="detail")
        gateway = Gateway(config, event_bus=event_bus, ids=ids, client=mock_client)

        await gateway.connect()

        mock_client.setServerLogLevel.assert_called_once_with(5)

    @pytest.mark.asyncio
    async def test_connect_failure(self, gateway, mock_client):
        mock_client.connectAsync.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(ConnectionRefusedError):
            await gateway.connect()

    @pytest.mark.asyncio
    async def test_requests_need_connection(self, gateway, mock_client, spy):
        mock_client.isConnected.return_value = False

        with pytest.raises(NotConnectedError):
            gateway.request_current_time()
        with pytest.raises(NotConnectedError):
            gateway.request_market_data(spy)
        mock_client.reqMktData.assert_not_called()

    @pytest.mark.asyncio
    async def test_api_end_publishes_connection_closed(self, gateway, mock_client):
        received = []
        gateway.event_bus.subscribe(received.append)

        mock_client.apiEnd.emit()
        mock_client.apiEnd.emit()

        await wait_until(lambda: len(received) == 1)
        await asyncio.sleep(0.01)
        assert [e.event_type for e in received] == [EventTypes.CONNECTION_CLOSED]

    @pytest.mark.asyncio
    async def test_api_error_publishes_exception(self, gateway, mock_client):
        received = []
        gateway.event_bus.subscribe(received.append)

        mock_client.apiError.emit("Peer closed connection")

        await wait_until(lambda: len(received) == 1)
        assert received[0].event_type == EventTypes.ERROR
        assert received[0]['exception'] == "Peer closed connection"

    @pytest.mark.asyncio
    async def test_close(self, gateway, mock_client):
        gateway.event_bus.subscribe(lambda e: None)

        await gateway.close()

        mock_client.disconnect.assert_called_once()
        assert gateway.event_bus.get_metrics()['subscribers'] == 0


class TestRequests:

    @pytest.mark.asyncio
    async def test_market_data_allocates_ticker_id(self, gateway, mock_client, spy):
        ticker_id = gateway.request_market_data(spy, snapshot=True)

        assert ticker_id == 42
        mock_client.reqMktData.assert_called_once_with(42, spy, '', True, False, [])

    @pytest.mark.asyncio
    async def test_market_data_generic_ticks(self, gateway, mock_client, spy):
        gateway.request_market_data(spy, ticker_id=5, ticks=['shortable'])
        mock_client.reqMktData.assert_called_once_with(5, spy, '236', False, False, [])

    @pytest.mark.asyncio
    async def test_historical_data(self, gateway, mock_client, spy):
        gateway.request_historical_data(9, spy, None, 5, 'days', 1, 'hour',
                                        show='bid_ask', use_regular_trading_hours=False)

        mock_client.reqHistoricalData.assert_called_once_with(
            9, spy, '', '5 D', '1 hour', 'BID_ASK', 0, 2, False, []
        )

    @pytest.mark.asyncio
    async def test_contract_details(self, gateway, mock_client, spy):
        assert gateway.request_contract_details(spy) == 9
        mock_client.reqContractDetails.assert_called_once_with(9, spy)

    @pytest.mark.asyncio
    async def test_place_order(self, gateway, mock_client, spy):
        order = MarketOrder('BUY', 100)

        assert gateway.place_order(spy, order) == 7
        assert gateway.place_order(spy, order) == 8
        mock_client.placeOrder.assert_called_with(8, spy, order)

    @pytest.mark.asyncio
    async def test_account_updates(self, gateway, mock_client):
        gateway.request_account_updates()
        gateway.request_account_updates(False, "DU111")

        assert mock_client.reqAccountUpdates.call_args_list[0].args == (True, "")
        assert mock_client.reqAccountUpdates.call_args_list[1].args == (False, "DU111")

    @pytest.mark.asyncio
    async def test_fundamental_data_report_names(self, gateway, mock_client, spy):
        request_id = gateway.request_fundamental_data(spy, 'financial_summary')
        mock_client.reqFundamentalData.assert_called_once_with(
            request_id, spy, 'ReportsFinSummary', []
        )
