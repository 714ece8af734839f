"""
Gateway connection

Owns the socket session to TWS / IB Gateway (an ``ib_async`` client), the
callback decoder, the event bus and the correlation id counters, and sends
outbound requests. Responses are never returned here: they arrive as events
on ``Gateway.event_bus``.
"""

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Union

from dotenv import load_dotenv
from ib_async import Contract, ExecutionFilter, Order
from ib_async.client import Client
from loguru import logger

from .event_bus import EventBus
from .ids import IdAllocator
from .translation import (
    bar_size_setting, duration_str, report_type, server_log_level,
    tick_list, to_ib_datetime, what_to_show
)
from .wrapper import GatewayWrapper


class NotConnectedError(ConnectionError):
    """Request sent without an open gateway session"""


@dataclass
class GatewayConfig:
    """Configuration for the gateway connection"""
    host: str = "localhost"
    port: int = 4002
    client_id: int = 1
    trading_mode: str = "paper"  # paper or live
    connect_timeout: float = 20.0
    request_timeout: Optional[float] = 30.0  # Default wait for synchronous calls
    server_log_level: str = "error"
    # Gateway errors carry a bare id: order ids (from 0, set by the server),
    # request ids and ticker ids are kept in disjoint ranges
    request_id_start: int = 1_000_000_000
    ticker_id_start: int = 1_500_000_000

    @classmethod
    def from_env(cls, **overrides) -> "GatewayConfig":
        """Build a config from environment variables (and a .env file)"""
        load_dotenv()

        trading_mode = os.getenv('TRADING_MODE', 'paper')
        if trading_mode == 'paper':
            port = int(os.getenv('IB_GATEWAY_PORT', 4002))
        else:
            port = int(os.getenv('IB_GATEWAY_PORT_LIVE', 4001))

        timeout = os.getenv('REQUEST_TIMEOUT')
        config = cls(
            host=os.getenv('IB_GATEWAY_HOST', 'localhost'),
            port=port,
            client_id=int(os.getenv('IB_CLIENT_ID', 1)),
            trading_mode=trading_mode,
            request_timeout=float(timeout) if timeout else cls.request_timeout,
            server_log_level=os.getenv('IB_SERVER_LOG_LEVEL', 'error'),
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(config, key, value)
        return config


class Gateway:
    """
    Connection to TWS / IB Gateway

    Every callback from the server is decoded into an Event and published
    on ``event_bus``; use ``event_bus.subscribe`` to react to them or
    ``SyncClient`` to await request results.
    """

    def __init__(self, config: Optional[GatewayConfig] = None,
                 event_bus: Optional[EventBus] = None,
                 ids: Optional[IdAllocator] = None,
                 client: Optional[Any] = None):
        self.config = config or GatewayConfig()
        self.event_bus = event_bus or EventBus("gateway")
        self.ids = ids or IdAllocator(
            ticker_start=self.config.ticker_id_start,
            request_start=self.config.request_id_start
        )
        self.wrapper = GatewayWrapper(self.event_bus.publish, self.ids)
        self.client = client if client is not None else Client(self.wrapper)
        self._connection_time: Optional[datetime] = None

        # Transport level notifications
        self.client.apiEnd += self._on_api_end
        self.client.apiError += self._on_api_error

    async def connect(self):
        """Connect to TWS / IB Gateway"""
        await self.event_bus.start()
        self.wrapper.reset()

        host, port, client_id = self.config.host, self.config.port, self.config.client_id
        logger.info(f"Connecting to IB Gateway at {host}:{port} (client id {client_id})")
        try:
            await self.client.connectAsync(host, port, client_id, self.config.connect_timeout)
        except Exception as e:
            logger.error(f"Error trying to connect to {host}:{port}: {e}")
            raise

        self._connection_time = datetime.now()
        logger.info(f"Connected to IB Gateway (server version {self.server_version()})")

        if self.config.server_log_level != "error":
            self.set_server_log_level(self.config.server_log_level)

    def disconnect(self):
        """
        Terminate the connection

        Orders already sent are not cancelled.
        """
        if self.client.isConnected():
            logger.info("Disconnecting from IB Gateway")
        self.client.disconnect()

    async def close(self):
        self.disconnect()
        await self.event_bus.stop()

    def is_connected(self) -> bool:
        return self.client.isConnected()

    def _on_api_end(self):
        self.wrapper.connectionClosed()

    def _on_api_error(self, message):
        self.wrapper.exception(ConnectionError(message))

    def _require_connection(self):
        if not self.client.isConnected():
            raise NotConnectedError("Not connected to IB Gateway")

    # Connection and server

    def request_current_time(self):
        self._require_connection()
        self.client.reqCurrentTime()

    def server_version(self) -> int:
        return self.client.serverVersion()

    def connection_time(self) -> Optional[datetime]:
        return self._connection_time

    def set_server_log_level(self, level: Union[str, int]):
        """Set the log level used on the server"""
        self._require_connection()
        self.client.setServerLogLevel(server_log_level(level))

    # Market data

    def request_market_data(self, contract: Contract, ticker_id: Optional[int] = None,
                            ticks: Union[str, List[str], None] = None,
                            snapshot: bool = False) -> int:
        """
        Request market data, returned in ``tick`` events

        For snapshots, a ``tick_snapshot_end`` event marks the end. ``ticks``
        is a list of generic tick names (see ``translation.GENERIC_TICKS``).

        Returns:
            The ticker id the ticks will carry
        """
        self._require_connection()
        if ticker_id is None:
            ticker_id = self.ids.next_ticker_id()
        logger.debug(f"Requesting market data #{ticker_id} for {contract}")
        self.client.reqMktData(ticker_id, contract, tick_list(ticks), snapshot, False, [])
        return ticker_id

    def cancel_market_data(self, ticker_id: int):
        self._require_connection()
        self.client.cancelMktData(ticker_id)

    def request_historical_data(self, request_id: int, contract: Contract,
                                end: Optional[datetime], duration: int, duration_unit: str,
                                bar_size: int, bar_size_unit: str,
                                show: str = "trades",
                                use_regular_trading_hours: bool = True):
        """
        Request historical price bars stretching ``duration`` ``duration_unit``s
        back from ``end``

        Bars arrive as ``price_bar`` events with ``request_id``, followed by
        ``price_bar_complete``.
        """
        self._require_connection()
        logger.debug(f"Requesting historical data #{request_id} for {contract}")
        self.client.reqHistoricalData(
            request_id,
            contract,
            to_ib_datetime(end),
            duration_str(duration, duration_unit),
            bar_size_setting(bar_size, bar_size_unit),
            what_to_show(show),
            1 if use_regular_trading_hours else 0,
            2,  # Dates as epoch seconds
            False,
            []
        )

    def request_real_time_bars(self, request_id: int, contract: Contract,
                               show: str = "trades",
                               use_regular_trading_hours: bool = True):
        """Start receiving 5 second ``price_bar`` events"""
        self._require_connection()
        self.client.reqRealTimeBars(request_id, contract, 5, what_to_show(show),
                                    use_regular_trading_hours, [])

    def cancel_real_time_bars(self, request_id: int):
        self._require_connection()
        self.client.cancelRealTimeBars(request_id)

    def request_news_bulletins(self, all_messages: bool = True):
        self._require_connection()
        self.client.reqNewsBulletins(all_messages)

    def cancel_news_bulletins(self):
        self._require_connection()
        self.client.cancelNewsBulletins()

    def request_fundamental_data(self, contract: Contract, report: str,
                                 request_id: Optional[int] = None) -> int:
        """Request a Reuters fundamental data report"""
        self._require_connection()
        if request_id is None:
            request_id = self.ids.next_request_id()
        self.client.reqFundamentalData(request_id, contract, report_type(report), [])
        return request_id

    def cancel_fundamental_data(self, request_id: int):
        self._require_connection()
        self.client.cancelFundamentalData(request_id)

    # Contracts

    def request_contract_details(self, contract: Contract,
                                 request_id: Optional[int] = None) -> int:
        """Request all details for a contract (``contract_details`` events)"""
        self._require_connection()
        if request_id is None:
            request_id = self.ids.next_request_id()
        logger.debug(f"Requesting contract details #{request_id} for {contract}")
        self.client.reqContractDetails(request_id, contract)
        return request_id

    # Orders

    def place_order(self, contract: Contract, order: Order,
                    order_id: Optional[int] = None) -> int:
        self._require_connection()
        if order_id is None:
            order_id = self.ids.next_order_id()
        logger.info(f"Placing order #{order_id}: {order.action} {order.totalQuantity} "
                    f"{contract.symbol} @ {order.orderType}")
        self.client.placeOrder(order_id, contract, order)
        return order_id

    def cancel_order(self, order_id: int):
        self._require_connection()
        logger.info(f"Cancel requested for order #{order_id}")
        self.client.cancelOrder(order_id)

    def request_open_orders(self):
        self._require_connection()
        self.client.reqOpenOrders()

    def request_executions(self, request_id: Optional[int] = None,
                           exec_filter: Optional[ExecutionFilter] = None) -> int:
        self._require_connection()
        if request_id is None:
            request_id = self.ids.next_request_id()
        self.client.reqExecutions(request_id, exec_filter or ExecutionFilter())
        return request_id

    # Account

    def request_account_updates(self, subscribe: bool = True, account_code: str = ""):
        self._require_connection()
        self.client.reqAccountUpdates(subscribe, account_code)
