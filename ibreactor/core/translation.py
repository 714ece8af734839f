"""
Value translation between gateway codes and the event vocabulary
"""

import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from ib_async import util


TICK_FIELDS = {
    0: 'bid_size',
    1: 'bid',
    2: 'ask',
    3: 'ask_size',
    4: 'last',
    5: 'last_size',
    6: 'high',
    7: 'low',
    8: 'volume',
    9: 'close',
    10: 'bid_option_computation',
    11: 'ask_option_computation',
    12: 'last_option_computation',
    13: 'model_option_computation',
    14: 'open',
    15: 'low_13_week',
    16: 'high_13_week',
    17: 'low_26_week',
    18: 'high_26_week',
    19: 'low_52_week',
    20: 'high_52_week',
    21: 'average_volume',
    22: 'open_interest',
    23: 'option_historical_volatility',
    24: 'option_implied_volatility',
    27: 'option_call_open_interest',
    28: 'option_put_open_interest',
    29: 'option_call_volume',
    30: 'option_put_volume',
    31: 'index_future_premium',
    32: 'bid_exchange',
    33: 'ask_exchange',
    34: 'auction_volume',
    35: 'auction_price',
    36: 'auction_imbalance',
    37: 'mark_price',
    45: 'last_timestamp',
    46: 'shortable',
    48: 'realtime_volume',
    49: 'halted',
    54: 'trade_count',
    55: 'trade_rate',
    56: 'volume_rate',
    66: 'delayed_bid',
    67: 'delayed_ask',
    68: 'delayed_last',
    69: 'delayed_bid_size',
    70: 'delayed_ask_size',
    71: 'delayed_last_size',
    72: 'delayed_high',
    73: 'delayed_low',
    74: 'delayed_volume',
    75: 'delayed_close',
    76: 'delayed_open',
}

# Price tick type -> the size tick type sent along with it
PRICE_SIZE_TICKS = {1: 0, 2: 3, 4: 5, 66: 69, 67: 70, 68: 71}

GENERIC_TICKS = {
    'option_volume': 100,
    'option_open_interest': 101,
    'historical_volatility': 104,
    'option_implied_volatility': 106,
    'index_future_premium': 162,
    'miscellaneous_stats': 165,
    'mark_price': 221,
    'auction_values': 225,
    'realtime_volume': 233,
    'shortable': 236,
    'inventory': 256,
    'fundamental_ratios': 258,
    'realtime_historical_volatility': 411,
}

MARKET_DATA_TYPES = {1: 'real_time', 2: 'frozen', 3: 'delayed', 4: 'delayed_frozen'}

MARKET_DEPTH_OPERATIONS = {0: 'insert', 1: 'update', 2: 'delete'}

MARKET_DEPTH_SIDES = {0: 'ask', 1: 'bid'}

SERVER_LOG_LEVELS = {
    'system': 1,
    'error': 2,
    'warning': 3,
    'information': 4,
    'detail': 5,
}

REPORT_TYPES = {
    'company_overview': 'ReportSnapshot',
    'financial_summary': 'ReportsFinSummary',
    'financial_ratios': 'ReportRatios',
    'financial_statements': 'ReportsFinStatements',
    'analyst_estimates': 'RESC',
    'company_calendar': 'CalendarReport',
    'ownership': 'ReportsOwnership',
}

# Duration units accepted by reqHistoricalData, and how to express the rest
DURATION_UNITS = {'second': 'S', 'day': 'D', 'week': 'W', 'month': 'M', 'year': 'Y'}
DURATION_IN_SECONDS = {'minute': 60, 'hour': 3600}

BAR_SIZE_UNITS = {
    'second': ('secs', 'secs'),
    'minute': ('min', 'mins'),
    'hour': ('hour', 'hours'),
    'day': ('day', 'days'),
    'week': ('week', 'weeks'),
    'month': ('month', 'months'),
}

_CAMEL_BOUNDARY = re.compile(r'(?<=[a-z0-9])(?=[A-Z])')


def tick_field_name(tick_type: int) -> str:
    return TICK_FIELDS.get(tick_type, f"tick_{tick_type}")


def order_status_name(status: str) -> str:
    """'PreSubmitted' -> 'pre_submitted'"""
    return _CAMEL_BOUNDARY.sub('_', status).lower()


def _singular(unit: str) -> str:
    unit = unit.lower().strip()
    return unit[:-1] if unit.endswith('s') else unit


def duration_str(duration: int, unit: str) -> str:
    """
    Format a historical data duration, e.g. (5, 'days') -> '5 D'

    Minutes and hours are not accepted by the gateway and are expressed in
    seconds instead.
    """
    unit = _singular(unit)
    if unit in DURATION_IN_SECONDS:
        return f"{duration * DURATION_IN_SECONDS[unit]} S"
    if unit not in DURATION_UNITS:
        raise ValueError(f"Unknown duration unit: {unit}")
    return f"{duration} {DURATION_UNITS[unit]}"


def bar_size_setting(size: int, unit: str) -> str:
    """Format a bar size, e.g. (5, 'minutes') -> '5 mins'"""
    unit = _singular(unit)
    if unit not in BAR_SIZE_UNITS:
        raise ValueError(f"Unknown bar size unit: {unit}")
    one, many = BAR_SIZE_UNITS[unit]
    return f"{size} {one if size == 1 else many}"


def what_to_show(value: str) -> str:
    """'bid_ask' -> 'BID_ASK'"""
    return value.replace('-', '_').upper()


def tick_list(ticks: Optional[Union[str, Iterable[str]]]) -> str:
    """Comma separated generic tick codes"""
    if not ticks:
        return ''
    if isinstance(ticks, str):
        return ticks
    return ','.join(str(GENERIC_TICKS[t]) for t in ticks)


def report_type(value: str) -> str:
    return REPORT_TYPES.get(value, value)


def server_log_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    return SERVER_LOG_LEVELS[level.lower()]


def to_ib_datetime(value: Optional[Any]) -> str:
    """Gateway date-time string, '' meaning now"""
    if not value:
        return ''
    if isinstance(value, str):
        return value
    return util.formatIBDatetime(value)


def from_ib_timestamp(value: Any) -> Any:
    """Epoch seconds or gateway date strings to datetime"""
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, timezone.utc)
    # 'yyyymmdd' daily bar dates are digits too
    if isinstance(value, str) and value.isdigit() and len(value) != 8:
        return datetime.fromtimestamp(int(value), timezone.utc)
    if isinstance(value, str) and value:
        return util.parseIBDatetime(value)
    return value


def parse_account_value(value: str) -> Any:
    """Account values arrive as strings; convert the numeric and boolean ones"""
    if not isinstance(value, str):
        return value
    lowered = value.lower()
    if lowered in ('true', 'false'):
        return lowered == 'true'
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value
