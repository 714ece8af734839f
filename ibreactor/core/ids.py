"""
Correlation id allocation

Ticker ids, order ids and request ids come from three independent
monotonic counters owned by one ``IdAllocator`` per gateway connection.
"""

import threading
from loguru import logger


class IdCounter:
    """Thread-safe monotonic counter; ``next()`` returns the incremented value"""

    def __init__(self, name: str, start: int = 0):
        self.name = name
        self.start = start
        self._value = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def advance_past(self, value: int) -> int:
        """
        Make sure the next allocation is greater than ``value``

        The counter never moves backwards, so ids already handed out are
        never reissued. Returns the next id that will be allocated.
        """
        with self._lock:
            if value > self._value:
                self._value = value
            return self._value + 1

    @property
    def current(self) -> int:
        """Last value handed out (or the starting point)"""
        with self._lock:
            return self._value

    def __repr__(self) -> str:
        return f"IdCounter({self.name!r}, current={self._value})"


class IdAllocator:
    """Ticker, order and request id counters for one connection"""

    def __init__(self, ticker_start: int = 0, order_start: int = 0, request_start: int = 0):
        self.ticker = IdCounter("ticker", ticker_start)
        self.order = IdCounter("order", order_start)
        self.request = IdCounter("request", request_start)

    def next_ticker_id(self) -> int:
        return self.ticker.next()

    def next_order_id(self) -> int:
        return self.order.next()

    def next_request_id(self) -> int:
        return self.request.next()

    def reset_order_id(self, server_next_id: int) -> int:
        """Sync the order counter with the server's next valid order id"""
        next_id = self.order.advance_past(server_next_id)
        logger.info(f"Next order ID: {next_id} (server reported {server_next_id})")
        for counter in (self.request, self.ticker):
            if counter.start > self.order.start and next_id > counter.start:
                logger.warning(f"Order ids have reached the {counter.name} id range "
                               f"(from {counter.start}); gateway errors may be ambiguous")
        return next_id
