"""
Synchronous request/response facade over the gateway event stream

Each operation follows the same scoped pattern: create a pending result,
subscribe a handler closing over the expected correlation id, send the
request, await the result, and unsubscribe on every exit path. Protocol
errors are not raised: the terminating error event is returned as the
result, and callers check it with ``is_error_result``.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from loguru import logger

from ib_async import Contract, ExecutionFilter, Order

from .event_bus import Event, EventBus, EventTypes
from .gateway import Gateway
from .termination import is_end, is_error_end


TERMINAL_ORDER_STATUSES = frozenset({'filled', 'cancelled', 'inactive'})

# "Order will not be placed at the exchange until <time>": market closed
MARKET_CLOSED_CODE = 399


def is_error_result(value: Any) -> bool:
    """True if a synchronous call resolved with an error event"""
    return isinstance(value, Event) and value.event_type == EventTypes.ERROR


class PendingResult:
    """Single assignment cell; the first ``deliver`` wins"""

    def __init__(self):
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def deliver(self, value: Any) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    async def get(self, timeout: Optional[float] = None) -> Any:
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)


class Accumulator:
    """Ordered partial results; frozen once delivered"""

    def __init__(self):
        self._items: List[Any] = []
        self.frozen = False

    def append(self, item: Any):
        if self.frozen:
            raise RuntimeError("Accumulator already delivered")
        self._items.append(item)

    def freeze(self) -> List[Any]:
        self.frozen = True
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class OrderExecution:
    """Outcome of ``SyncClient.execute_order``"""
    order_id: int
    events: Tuple[Event, ...]
    market_closed: bool = False

    @property
    def terminal(self) -> Event:
        return self.events[-1]

    @property
    def status(self) -> Optional[str]:
        return self.terminal.get('status')

    @property
    def is_error(self) -> bool:
        return is_error_result(self.terminal)


class SynchronousBridge:
    """
    Turns the event stream into awaitable single results

    Waits that have no correlation id (``serialize`` given) run one at a
    time per key, since any end event of the right type would end them.
    """

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self._unscoped_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def subscription(self, handler: Callable[[Event], Any]):
        """Subscribe ``handler`` for the duration of the block"""
        subscription = self.event_bus.subscribe(handler)
        try:
            yield subscription
        finally:
            self.event_bus.unsubscribe(subscription)

    async def wait_for(self, send_request: Callable[[], Any],
                       handler: Callable[[Event, PendingResult], None],
                       timeout: Optional[float] = None,
                       serialize: Optional[str] = None) -> Any:
        """
        Send a request and wait until ``handler`` delivers a result

        Args:
            send_request: Issues the outbound request; called after subscribing
            handler: Called with each event and the pending result
            timeout: Seconds to wait; raises asyncio.TimeoutError on expiry
            serialize: Lock key for waits without a correlation id

        Returns:
            Whatever the handler delivered
        """
        if serialize is None:
            return await self._wait(send_request, handler, timeout)

        async with self._unscoped_locks[serialize]:
            return await self._wait(send_request, handler, timeout)

    async def _wait(self, send_request, handler, timeout):
        result = PendingResult()

        def on_event(event: Event):
            if not result.done:
                handler(event, result)

        on_event.__name__ = getattr(handler, '__name__', 'on_event')

        async with self.subscription(on_event):
            send_request()
            try:
                return await result.get(timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out after {timeout}s waiting for {on_event.__name__}")
                raise

    async def run_synchronous(self, send_request: Callable[[], Any],
                              match: Callable[[Event], bool],
                              end: Callable[[Event], bool],
                              accumulate: bool = True,
                              timeout: Optional[float] = None,
                              serialize: Optional[str] = None) -> Any:
        """
        Generic request/response wait

        Events satisfying ``match`` are collected (or, without accumulation,
        the first one is the result). When ``end`` fires the wait resolves
        with the terminating event if it is an error, otherwise with the
        collected events.
        """
        accumulator = Accumulator()

        def handler(event: Event, result: PendingResult):
            if match(event):
                if not accumulate:
                    result.deliver(event)
                    return
                accumulator.append(event)

            if end(event):
                if is_error_result(event):
                    result.deliver(event)
                elif accumulate:
                    result.deliver(accumulator.freeze())
                else:
                    result.deliver(event)

        return await self.wait_for(send_request, handler, timeout, serialize)


class SyncClient:
    """
    Awaitable request/response operations on a gateway connection

    These are easiest to use interactively; applications reacting to market
    data are better served by subscribing to ``gateway.event_bus`` directly.

    A dropped socket is published as an ``error`` event carrying only an
    ``exception`` and no id, followed by ``connection_closed``. That ends the
    waits without a correlation id (``get_time``, ``get_open_orders``,
    ``get_account_snapshot``) but not the id-scoped ones (contract details,
    price snapshot, order execution, historical data, executions), which
    keep waiting until their timeout. Pass a timeout (here or per call)
    when the connection may drop.
    """

    def __init__(self, gateway: Gateway, timeout: Optional[float] = None):
        self.gateway = gateway
        self.timeout = timeout
        self.bridge = SynchronousBridge(gateway.event_bus)

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return self.timeout if timeout is None else timeout

    async def get_time(self, timeout: Optional[float] = None) -> Any:
        """Returns the server time (or the error event)"""
        def handle_time(event: Event, result: PendingResult):
            if event.event_type == EventTypes.CURRENT_TIME:
                result.deliver(event['value'])
            elif is_error_end(event):
                result.deliver(event)

        return await self.bridge.wait_for(
            self.gateway.request_current_time, handle_time,
            self._timeout(timeout), serialize=EventTypes.CURRENT_TIME
        )

    async def get_contract_details(self, contract: Contract,
                                   timeout: Optional[float] = None) -> Any:
        """Gets details for the specified contract"""
        request_id = self.gateway.ids.next_request_id()
        accumulator = Accumulator()

        def handle_contract_details(event: Event, result: PendingResult):
            if (event.event_type == EventTypes.CONTRACT_DETAILS
                    and event.get('request_id') == request_id):
                accumulator.append(event['value'])
            elif is_end(event, request_id):
                if is_error_result(event):
                    result.deliver(event)
                else:
                    result.deliver(accumulator.freeze())

        return await self.bridge.wait_for(
            lambda: self.gateway.request_contract_details(contract, request_id),
            handle_contract_details, self._timeout(timeout)
        )

    async def get_current_price(self, contract: Contract,
                                timeout: Optional[float] = None) -> Any:
        """
        Snapshot of the current market data for a contract

        Returns:
            Dict of tick field name to value, or the error event
        """
        ticker_id = self.gateway.ids.next_ticker_id()
        fields: Dict[str, Any] = {}

        def handle_ticks(event: Event, result: PendingResult):
            if event.event_type == EventTypes.TICK and event.get('ticker_id') == ticker_id:
                fields[event['field']] = event.get('value')
            elif is_end(event, ticker_id):
                if is_error_result(event):
                    result.deliver(event)
                else:
                    result.deliver(dict(fields))

        return await self.bridge.wait_for(
            lambda: self.gateway.request_market_data(contract, ticker_id, snapshot=True),
            handle_ticks, self._timeout(timeout)
        )

    async def execute_order(self, contract: Contract, order: Order,
                            timeout: Optional[float] = None) -> OrderExecution:
        """
        Places an order, returning when it is filled, cancelled or inactive

        If the gateway reports the market closed (code 399) the order is
        considered settled once it is pre-submitted.
        """
        order_id = self.gateway.ids.next_order_id()
        updates: List[Event] = []
        state = {'market_closed': False}

        def finish(event: Event, result: PendingResult):
            updates.append(event)
            result.deliver(OrderExecution(order_id, tuple(updates), state['market_closed']))

        def handle_order(event: Event, result: PendingResult):
            own_id = event.get('order_id')
            if own_id is None:
                own_id = event.get('request_id')
            this_order = own_id == order_id
            status = event.get('status')

            if this_order and status in TERMINAL_ORDER_STATUSES:
                finish(event, result)
            elif this_order and state['market_closed'] and status == 'pre_submitted':
                finish(event, result)
            elif (this_order and event.event_type == EventTypes.ERROR
                    and event.get('code') == MARKET_CLOSED_CODE):
                logger.info(f"Order #{order_id} will be processed when the market reopens")
                state['market_closed'] = True
                updates.append(event)
            elif is_end(event, order_id):
                finish(event, result)
            elif this_order:
                updates.append(event)

        return await self.bridge.wait_for(
            lambda: self.gateway.place_order(contract, order, order_id),
            handle_order, self._timeout(timeout)
        )

    async def get_historical_data(self, contract: Contract, end_time: Optional[datetime],
                                  duration: int, duration_unit: str,
                                  bar_size: int, bar_size_unit: str,
                                  what_to_show: str = "trades",
                                  use_regular_trading_hours: bool = True,
                                  timeout: Optional[float] = None) -> Any:
        """Gets historical price bars (``price_bar`` events) for a contract"""
        request_id = self.gateway.ids.next_request_id()

        def send():
            self.gateway.request_historical_data(
                request_id, contract, end_time, duration, duration_unit,
                bar_size, bar_size_unit, what_to_show, use_regular_trading_hours
            )

        return await self.bridge.run_synchronous(
            send,
            match=lambda e: (e.event_type == EventTypes.PRICE_BAR
                             and e.get('request_id') == request_id),
            end=lambda e: is_end(e, request_id),
            timeout=self._timeout(timeout)
        )

    async def get_open_orders(self, timeout: Optional[float] = None) -> Any:
        """Gets all open orders (``open_order`` events) for this connection"""
        return await self.bridge.run_synchronous(
            self.gateway.request_open_orders,
            match=lambda e: e.event_type == EventTypes.OPEN_ORDER,
            end=lambda e: (is_error_end(e)
                           or e.event_type == EventTypes.OPEN_ORDER_END),
            timeout=self._timeout(timeout),
            serialize=EventTypes.OPEN_ORDER_END
        )

    async def get_executions(self, exec_filter: Optional[ExecutionFilter] = None,
                             timeout: Optional[float] = None) -> Any:
        """Gets today's executions (``execution_details`` events)"""
        request_id = self.gateway.ids.next_request_id()
        return await self.bridge.run_synchronous(
            lambda: self.gateway.request_executions(request_id, exec_filter),
            match=lambda e: (e.event_type == EventTypes.EXECUTION_DETAILS
                             and e.get('request_id') == request_id),
            end=lambda e: is_end(e, request_id),
            timeout=self._timeout(timeout)
        )

    async def get_account_snapshot(self, account_code: str = "",
                                   timeout: Optional[float] = None) -> Any:
        """
        One download of account values and portfolio positions

        Returns:
            List of ``update_account_value`` / ``update_portfolio`` events,
            or the error event
        """
        account_types = {EventTypes.UPDATE_ACCOUNT_VALUE, EventTypes.UPDATE_PORTFOLIO}
        try:
            return await self.bridge.run_synchronous(
                lambda: self.gateway.request_account_updates(True, account_code),
                match=lambda e: e.event_type in account_types,
                end=lambda e: (is_error_end(e)
                               or e.event_type == EventTypes.ACCOUNT_DOWNLOAD_END),
                timeout=self._timeout(timeout),
                serialize=EventTypes.ACCOUNT_DOWNLOAD_END
            )
        finally:
            if self.gateway.is_connected():
                self.gateway.request_account_updates(False, account_code)

    def cancel_order(self, order_id: int):
        self.gateway.cancel_order(order_id)
