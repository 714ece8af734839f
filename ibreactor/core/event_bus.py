"""
Broadcast event bus for gateway events

Every decoded gateway callback is published once and copied to every
attached subscriber. Each subscriber owns an unbounded queue and a consumer
task, so a slow or failing handler never delays the publisher or the other
subscribers, and each subscriber sees events in publish order.
"""

import asyncio
import threading
import time
import traceback
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set
from loguru import logger


@dataclass(frozen=True)
class Event:
    """Decoded gateway event with timing information"""
    event_type: str
    data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'data', MappingProxyType(dict(self.data)))

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    @property
    def correlation_id(self) -> Optional[int]:
        """First id present among request, order and ticker id"""
        for key in ('request_id', 'order_id', 'ticker_id'):
            value = self.data.get(key)
            if value is not None:
                return value
        return None

    @property
    def age_ms(self) -> float:
        """Age of event in milliseconds"""
        return (time.time() - self.timestamp) * 1000

    def __repr__(self) -> str:
        fields = ', '.join(f"{k}={v!r}" for k, v in self.data.items())
        return f"Event({self.event_type}: {fields})"


class EventTypes:
    """Fixed vocabulary of gateway event types"""
    # Connection and server
    CURRENT_TIME = "current_time"
    ERROR = "error"
    CONNECTION_CLOSED = "connection_closed"
    NEXT_VALID_ORDER_ID = "next_valid_order_id"
    MANAGED_ACCOUNTS = "managed_accounts"

    # Market data
    TICK = "tick"
    TICK_SNAPSHOT_END = "tick_snapshot_end"
    MARKET_DATA_TYPE = "market_data_type"
    UPDATE_MARKET_DEPTH = "update_market_depth"
    UPDATE_MARKET_DEPTH_LEVEL_2 = "update_market_depth_level_2"

    # Orders
    ORDER_STATUS = "order_status"
    OPEN_ORDER = "open_order"
    OPEN_ORDER_END = "open_order_end"

    # Contracts
    CONTRACT_DETAILS = "contract_details"
    CONTRACT_DETAILS_END = "contract_details_end"

    # Executions
    EXECUTION_DETAILS = "execution_details"
    EXECUTION_DETAILS_END = "execution_details_end"
    COMMISSION_REPORT = "commission_report"

    # Account and portfolio
    UPDATE_ACCOUNT_VALUE = "update_account_value"
    UPDATE_PORTFOLIO = "update_portfolio"
    UPDATE_ACCOUNT_TIME = "update_account_time"
    ACCOUNT_DOWNLOAD_END = "account_download_end"
    ACCOUNT_SUMMARY = "account_summary"
    ACCOUNT_SUMMARY_END = "account_summary_end"
    POSITION = "position"
    POSITION_END = "position_end"

    # Bars
    PRICE_BAR = "price_bar"
    PRICE_BAR_COMPLETE = "price_bar_complete"

    # News bulletins
    NEWS_BULLETIN = "news_bulletin"
    EXCHANGE_UNAVAILABLE = "exchange_unavailable"
    EXCHANGE_AVAILABLE = "exchange_available"

    # Scanners and reports
    SCAN_RESULT = "scan_result"
    SCAN_END = "scan_end"
    FUNDAMENTAL_DATA = "fundamental_data"


class Subscription:
    """
    Handle for one attached subscriber

    Created by ``EventBus.subscribe``; pass it back to ``EventBus.unsubscribe``
    to detach.
    """

    def __init__(self, handler: Callable, event_types: Optional[Iterable[str]] = None):
        self.handler = handler
        self.event_types: Optional[Set[str]] = set(event_types) if event_types else None
        self.queue: asyncio.Queue = asyncio.Queue()
        self.active = True
        self.delivered = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return getattr(self.handler, '__name__', repr(self.handler))

    def wants(self, event: Event) -> bool:
        return self.event_types is None or event.event_type in self.event_types

    def __repr__(self) -> str:
        state = "active" if self.active else "detached"
        return f"<Subscription {self.name} {state} pending={self.queue.qsize()}>"


class EventBus:
    """
    One-to-many broadcast of gateway events

    Features:
    - Non-blocking publish, callable from any thread
    - Per-subscriber queue and consumer task (ordering + isolation)
    - Sync and async handlers
    - Idempotent unsubscribe, safe from inside a handler
    - Delivery metrics
    """

    def __init__(self, name: str = "gateway"):
        self.name = name
        self._subscriptions: Dict[int, Subscription] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._running = False
        # Guards the subscriber table against publishers on other threads
        self._lock = threading.Lock()
        self._metrics = {
            'events_published': 0,
            'events_delivered': 0,
            'errors': 0,
            'total_latency_ms': 0.0
        }

    async def start(self):
        """Bind the bus to the running event loop"""
        if not self._running:
            self._loop = asyncio.get_running_loop()
            self._loop_thread = threading.get_ident()
            self._running = True
            logger.info(f"EventBus '{self.name}' started")

    async def stop(self):
        """Detach every subscriber"""
        for subscription in list(self._subscriptions.values()):
            self.unsubscribe(subscription)
        self._running = False
        logger.info(f"EventBus '{self.name}' stopped")

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, handler: Callable,
                  event_types: Optional[Iterable[str]] = None) -> Subscription:
        """
        Attach a subscriber

        Args:
            handler: Callback taking one Event (can be sync or async)
            event_types: Only deliver these event types (default: all)

        Returns:
            Subscription handle, receiving every event published from now on
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
            self._loop_thread = threading.get_ident()
            self._running = True

        subscription = Subscription(handler, event_types)
        with self._lock:
            self._subscriptions[id(subscription)] = subscription
        subscription._task = self._loop.create_task(self._consume(subscription))

        logger.debug(f"Handler {subscription.name} subscribed to '{self.name}'")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        """Detach a subscriber; calling it again is a no-op"""
        if not subscription.active:
            return

        subscription.active = False
        with self._lock:
            self._subscriptions.pop(id(subscription), None)

        task = subscription._task
        if task is not None and not task.done():
            if self._in_loop_thread():
                # A handler detaching itself finishes its current event
                if task is not asyncio.current_task():
                    task.cancel()
            else:
                self._loop.call_soon_threadsafe(task.cancel)

        logger.debug(f"Handler {subscription.name} unsubscribed from '{self.name}'")

    def publish(self, event: Event):
        """
        Publish an event to every attached subscriber

        Never blocks. The recipients are the subscriptions attached when
        publish is called; off the loop thread the delivery to them is
        scheduled on the loop.
        """
        with self._lock:
            recipients = list(self._subscriptions.values())
            if self._loop is not None and not self._in_loop_thread():
                # Scheduled under the lock so concurrent publishers keep their order
                self._loop.call_soon_threadsafe(self._fan_out, event, recipients)
                return

        self._fan_out(event, recipients)

    async def emit(self, event: Event):
        """Coroutine form of publish"""
        self.publish(event)

    def _in_loop_thread(self) -> bool:
        return self._loop_thread is None or self._loop_thread == threading.get_ident()

    def _fan_out(self, event: Event, recipients: List[Subscription]):
        self._metrics['events_published'] += 1
        logger.debug(f"Dispatching: {event!r}")
        for subscription in recipients:
            if subscription.active and subscription.wants(event):
                subscription.queue.put_nowait(event)

    async def _consume(self, subscription: Subscription):
        """Consumer task for one subscription"""
        handler = subscription.handler
        is_async = asyncio.iscoroutinefunction(handler)

        while subscription.active:
            event = await subscription.queue.get()
            if not subscription.active:
                break

            start_time = time.perf_counter()
            try:
                if is_async:
                    await handler(event)
                else:
                    handler(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in handler {subscription.name}: {e}")
                logger.error(traceback.format_exc())
                self._metrics['errors'] += 1

            subscription.delivered += 1
            self._metrics['events_delivered'] += 1
            latency = (time.perf_counter() - start_time) * 1000
            self._metrics['total_latency_ms'] += latency

            if latency > 10.0:  # Log if handling takes > 10ms
                logger.warning(f"Slow handler {subscription.name}: "
                               f"{event.event_type} took {latency:.2f}ms")

    def get_metrics(self) -> Dict[str, Any]:
        """Get delivery metrics"""
        avg_latency = 0.0
        if self._metrics['events_delivered'] > 0:
            avg_latency = self._metrics['total_latency_ms'] / self._metrics['events_delivered']

        return {
            'events_published': self._metrics['events_published'],
            'events_delivered': self._metrics['events_delivered'],
            'events_pending': sum(s.queue.qsize() for s in self._subscriptions.values()),
            'errors': self._metrics['errors'],
            'avg_latency_ms': avg_latency,
            'subscribers': len(self._subscriptions)
        }

    def reset_metrics(self):
        """Reset delivery metrics"""
        self._metrics = {
            'events_published': 0,
            'events_delivered': 0,
            'errors': 0,
            'total_latency_ms': 0.0
        }
