"""
Termination classifier for gateway request flows

Pure predicates deciding whether an event is a warning or an error, whether
an error concerns a single request or the whole connection, and whether an
event ends the response flow of a given correlation id. Every synchronous
wait applies the same predicates to every event it sees, because a single
connection-level error must end all outstanding waits at once.
"""

from typing import Any, Optional

from .event_bus import Event, EventTypes


# Gateway codes at or above this are informational (market data farm
# connection OK, etc.)
WARNING_CODE_THRESHOLD = 2100

REQUEST_LEVEL_ERROR_CODES = frozenset({
    200,   # No security definition has been found for the request
})

CONNECTION_LEVEL_ERROR_CODES = frozenset({
    504,   # Not connected
    1100,  # Connectivity between IB and TWS has been lost
})

END_EVENT_TYPES = frozenset({
    EventTypes.TICK_SNAPSHOT_END,
    EventTypes.OPEN_ORDER_END,
    EventTypes.ACCOUNT_DOWNLOAD_END,
    EventTypes.CONTRACT_DETAILS_END,
    EventTypes.PRICE_BAR_COMPLETE,
    EventTypes.EXECUTION_DETAILS_END,
    EventTypes.SCAN_END,
})


def _is_code(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_error_event(value: Any) -> bool:
    return isinstance(value, Event) and value.event_type == EventTypes.ERROR


def is_warning(event_or_code: Any) -> bool:
    """
    True for informational gateway messages

    Accepts either a raw integer code or an error event. Error events
    carrying an exception, and error events without a code, are never
    warnings.
    """
    if _is_code(event_or_code):
        return event_or_code >= WARNING_CODE_THRESHOLD

    if _is_error_event(event_or_code):
        if event_or_code.get('exception') is not None:
            return False
        code = event_or_code.get('code')
        if code is None:
            return False
        return is_warning(code)

    return False


def is_error(event_or_code: Any) -> bool:
    return not is_warning(event_or_code)


def is_request_level_error(event_or_code: Any) -> bool:
    """True if the error means this specific request cannot proceed"""
    if isinstance(event_or_code, Event):
        return (event_or_code.event_type == EventTypes.ERROR
                and is_request_level_error(event_or_code.get('code')))
    return _is_code(event_or_code) and event_or_code in REQUEST_LEVEL_ERROR_CODES


def is_connection_level_error(event_or_code: Any) -> bool:
    """True if the error means the whole session is unusable"""
    if isinstance(event_or_code, Event):
        return (event_or_code.event_type == EventTypes.ERROR
                and is_connection_level_error(event_or_code.get('code')))
    return _is_code(event_or_code) and event_or_code in CONNECTION_LEVEL_ERROR_CODES


def is_error_end(event: Event, expected_id: Optional[int] = None) -> bool:
    """
    True if ``event`` is an error that ends the wait for ``expected_id``

    Connection-level errors end every wait regardless of id. Any other error
    ends the wait only when its own id (request, order or ticker id, first
    one present) equals ``expected_id``; an error without any id therefore
    only ends waits that have no expected id.
    """
    if event.event_type != EventTypes.ERROR:
        return False

    if not is_error(event):
        return False

    if is_connection_level_error(event):
        return True

    return event.correlation_id == expected_id


def is_request_end(event: Event, expected_id: Optional[int] = None) -> bool:
    """True if ``event`` marks the end of a series of responses"""
    if event.event_type not in END_EVENT_TYPES:
        return False
    return expected_id is None or event.get('request_id') == expected_id


def is_end(event: Event, expected_id: Optional[int] = None) -> bool:
    return is_error_end(event, expected_id) or is_request_end(event, expected_id)
