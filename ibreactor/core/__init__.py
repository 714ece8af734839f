"""
Core infrastructure for the IB gateway event bridge
"""

from .event_bus import EventBus, Event, EventTypes, Subscription
from .gateway import Gateway, GatewayConfig, NotConnectedError
from .ids import IdAllocator
from .synchronous import SyncClient, SynchronousBridge, OrderExecution, is_error_result
from .termination import (
    is_warning, is_error, is_request_level_error, is_connection_level_error,
    is_error_end, is_request_end, is_end
)

__all__ = [
    'EventBus', 'Event', 'EventTypes', 'Subscription',
    'Gateway', 'GatewayConfig', 'NotConnectedError',
    'IdAllocator',
    'SyncClient', 'SynchronousBridge', 'OrderExecution', 'is_error_result',
    'is_warning', 'is_error', 'is_request_level_error', 'is_connection_level_error',
    'is_error_end', 'is_request_end', 'is_end',
]
