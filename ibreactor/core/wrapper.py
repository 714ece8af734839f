"""
Gateway callback decoder

The ``ib_async`` socket client decodes each incoming message into a call on
a wrapper object (the EWrapper interface). ``GatewayWrapper`` flattens that
interface: every callback becomes one ``Event`` with a ``event_type`` and its
massaged parameters, handed to a single publish function.
"""

from typing import Any, Callable, Optional
from loguru import logger

from .event_bus import Event, EventTypes
from .ids import IdAllocator
from .termination import is_warning
from .translation import (
    MARKET_DATA_TYPES, MARKET_DEPTH_OPERATIONS, MARKET_DEPTH_SIDES,
    PRICE_SIZE_TICKS, from_ib_timestamp, order_status_name,
    parse_account_value, tick_field_name
)


NEWS_BULLETIN_TYPES = {
    1: EventTypes.NEWS_BULLETIN,
    2: EventTypes.EXCHANGE_UNAVAILABLE,
    3: EventTypes.EXCHANGE_AVAILABLE,
}


class GatewayWrapper:
    """
    EWrapper implementation publishing decoded events

    Callbacks not decoded here are logged at debug level and ignored.
    """

    def __init__(self, publish: Callable[[Event], None], ids: Optional[IdAllocator] = None,
                 source: str = "gateway"):
        self.publish = publish
        self.ids = ids
        self.source = source
        self._closed = False

    def __getattr__(self, name: str) -> Callable[..., None]:
        if name.startswith('_'):
            raise AttributeError(name)

        def unhandled(*args, **kwargs):
            logger.debug(f"Unhandled gateway callback {name}{args}")

        return unhandled

    def _dispatch(self, event_type: str, **fields: Any):
        self.publish(Event(event_type, fields, source=self.source))

    def reset(self):
        """Prepare for a new session"""
        self._closed = False

    # Connection and server

    def currentTime(self, time):
        self._dispatch(EventTypes.CURRENT_TIME, value=from_ib_timestamp(time))

    def error(self, reqId, errorCode, errorString, *args):
        if is_warning(errorCode):
            logger.info(f"Gateway message {errorCode} (id {reqId}): {errorString}")
        else:
            logger.error(f"Gateway error {errorCode} (id {reqId}): {errorString}")
        fields = dict(request_id=reqId, code=errorCode, message=errorString)
        if args and args[0]:
            fields['advanced_order_reject'] = args[0]
        self._dispatch(EventTypes.ERROR, **fields)

    def exception(self, ex: BaseException):
        """Transport level failure without a gateway code"""
        logger.error(f"Error: {ex}")
        self._dispatch(EventTypes.ERROR, exception=str(ex))

    def connectionClosed(self):
        if self._closed:
            return
        self._closed = True
        logger.info("Connection closed")
        self._dispatch(EventTypes.CONNECTION_CLOSED)

    def nextValidId(self, orderId):
        self._closed = False
        if self.ids is not None:
            self.ids.reset_order_id(orderId)
        else:
            logger.info(f"Next order ID: {orderId}")
        self._dispatch(EventTypes.NEXT_VALID_ORDER_ID, value=orderId)

    def managedAccounts(self, accountsList):
        accounts = [a.strip() for a in accountsList.split(',') if a.strip()]
        self._dispatch(EventTypes.MANAGED_ACCOUNTS, accounts=accounts)

    # Market data

    def tickPrice(self, reqId, tickType, price, attrib=None):
        fields = dict(ticker_id=reqId, field=tick_field_name(tickType), value=price)
        if attrib is not None:
            fields['can_auto_execute'] = bool(getattr(attrib, 'canAutoExecute', False))
        self._dispatch(EventTypes.TICK, **fields)

    def priceSizeTick(self, reqId, tickType, price, size):
        self.tickPrice(reqId, tickType, price)
        if tickType in PRICE_SIZE_TICKS:
            self.tickSize(reqId, PRICE_SIZE_TICKS[tickType], size)

    def tickSize(self, reqId, tickType, size):
        self._dispatch(EventTypes.TICK, ticker_id=reqId,
                       field=tick_field_name(tickType), value=size)

    def tickGeneric(self, reqId, tickType, value):
        self._dispatch(EventTypes.TICK, ticker_id=reqId,
                       field=tick_field_name(tickType), value=value)

    def tickString(self, reqId, tickType, value):
        field = tick_field_name(tickType)
        if field == 'last_timestamp':
            value = from_ib_timestamp(value)
        self._dispatch(EventTypes.TICK, ticker_id=reqId, field=field, value=value)

    def tickOptionComputation(self, reqId, tickType, *args):
        # Older servers omit tickAttrib
        if len(args) == 9:
            args = args[1:]
        implied_vol, delta, opt_price, pv_dividend, gamma, vega, theta, und_price = args
        self._dispatch(EventTypes.TICK, ticker_id=reqId,
                       field=tick_field_name(tickType),
                       implied_volatility=implied_vol, option_price=opt_price,
                       pv_dividends=pv_dividend, underlying_price=und_price,
                       delta=delta, gamma=gamma, theta=theta, vega=vega)

    def tickEFP(self, reqId, tickType, basisPoints, formattedBasisPoints,
                impliedFuture, holdDays, futureLastTradeDate, dividendImpact,
                dividendsToLastTradeDate):
        self._dispatch(EventTypes.TICK, ticker_id=reqId,
                       field=tick_field_name(tickType),
                       basis_points=basisPoints,
                       formatted_basis_points=formattedBasisPoints,
                       implied_future=impliedFuture, hold_days=holdDays,
                       future_expiry=futureLastTradeDate,
                       dividend_impact=dividendImpact,
                       dividends_to_expiry=dividendsToLastTradeDate)

    def tickSnapshotEnd(self, reqId):
        self._dispatch(EventTypes.TICK_SNAPSHOT_END, request_id=reqId)

    def marketDataType(self, reqId, marketDataType):
        self._dispatch(EventTypes.MARKET_DATA_TYPE, request_id=reqId,
                       market_data_type=MARKET_DATA_TYPES.get(marketDataType, marketDataType))

    def updateMktDepth(self, reqId, position, operation, side, price, size):
        self._dispatch(EventTypes.UPDATE_MARKET_DEPTH, ticker_id=reqId,
                       position=position,
                       operation=MARKET_DEPTH_OPERATIONS.get(operation, operation),
                       side=MARKET_DEPTH_SIDES.get(side, side),
                       price=price, size=size)

    def updateMktDepthL2(self, reqId, position, marketMaker, operation, side,
                         price, size, *args):
        self._dispatch(EventTypes.UPDATE_MARKET_DEPTH_LEVEL_2, ticker_id=reqId,
                       position=position, market_maker=marketMaker,
                       operation=MARKET_DEPTH_OPERATIONS.get(operation, operation),
                       side=MARKET_DEPTH_SIDES.get(side, side),
                       price=price, size=size)

    # Orders

    def orderStatus(self, orderId, status, filled, remaining, avgFillPrice,
                    permId, parentId, lastFillPrice, clientId, whyHeld, *args):
        self._dispatch(EventTypes.ORDER_STATUS, order_id=orderId,
                       status=order_status_name(status),
                       filled=filled, remaining=remaining,
                       average_fill_price=avgFillPrice,
                       permanent_id=permId, parent_id=parentId,
                       last_fill_price=lastFillPrice, client_id=clientId,
                       why_held=whyHeld)

    def openOrder(self, orderId, contract, order, orderState):
        self._dispatch(EventTypes.OPEN_ORDER, order_id=orderId, contract=contract,
                       order=order, order_state=orderState)

    def openOrderEnd(self):
        self._dispatch(EventTypes.OPEN_ORDER_END)

    # Contract details

    def contractDetails(self, reqId, contractDetails):
        self._dispatch(EventTypes.CONTRACT_DETAILS, request_id=reqId, value=contractDetails)

    def bondContractDetails(self, reqId, contractDetails):
        self._dispatch(EventTypes.CONTRACT_DETAILS, request_id=reqId, value=contractDetails)

    def contractDetailsEnd(self, reqId):
        self._dispatch(EventTypes.CONTRACT_DETAILS_END, request_id=reqId)

    # Executions

    def execDetails(self, reqId, contract, execution):
        self._dispatch(EventTypes.EXECUTION_DETAILS, request_id=reqId,
                       contract=contract, value=execution)

    def execDetailsEnd(self, reqId):
        self._dispatch(EventTypes.EXECUTION_DETAILS_END, request_id=reqId)

    def commissionReport(self, commissionReport):
        self._dispatch(EventTypes.COMMISSION_REPORT, report=commissionReport)

    # Account and portfolio

    def updateAccountValue(self, key, val, currency, accountName):
        self._dispatch(EventTypes.UPDATE_ACCOUNT_VALUE, key=key,
                       value=parse_account_value(val),
                       currency=currency, account=accountName)

    def updatePortfolio(self, contract, posSize, marketPrice, marketValue,
                        averageCost, unrealizedPNL, realizedPNL, accountName):
        self._dispatch(EventTypes.UPDATE_PORTFOLIO, contract=contract,
                       position=posSize, market_price=marketPrice,
                       market_value=marketValue, average_cost=averageCost,
                       unrealized_gain_loss=unrealizedPNL,
                       realized_gain_loss=realizedPNL, account=accountName)

    def updateAccountTime(self, timeStamp):
        self._dispatch(EventTypes.UPDATE_ACCOUNT_TIME, value=timeStamp)

    def accountDownloadEnd(self, accountName):
        self._dispatch(EventTypes.ACCOUNT_DOWNLOAD_END, account_code=accountName)

    def accountSummary(self, reqId, account, tag, value, currency):
        self._dispatch(EventTypes.ACCOUNT_SUMMARY, request_id=reqId, account=account,
                       tag=tag, value=value, currency=currency)

    def accountSummaryEnd(self, reqId):
        self._dispatch(EventTypes.ACCOUNT_SUMMARY_END, request_id=reqId)

    def position(self, account, contract, posSize, avgCost):
        self._dispatch(EventTypes.POSITION, account=account, contract=contract,
                       position=posSize, average_cost=avgCost)

    def positionEnd(self):
        self._dispatch(EventTypes.POSITION_END)

    # Historical and real time bars

    def historicalData(self, reqId, bar):
        self._dispatch(EventTypes.PRICE_BAR, request_id=reqId,
                       time=from_ib_timestamp(bar.date),
                       open=bar.open, high=bar.high, low=bar.low, close=bar.close,
                       volume=bar.volume, trade_count=bar.barCount,
                       wap=bar.average)

    def historicalDataEnd(self, reqId, start, end):
        self._dispatch(EventTypes.PRICE_BAR_COMPLETE, request_id=reqId,
                       start=start, end=end)

    def realtimeBar(self, reqId, time, open_, high, low, close, volume, wap, count):
        self._dispatch(EventTypes.PRICE_BAR, request_id=reqId,
                       time=from_ib_timestamp(time),
                       open=open_, high=high, low=low, close=close,
                       volume=volume, trade_count=count, wap=wap)

    # News bulletins

    def updateNewsBulletin(self, msgId, msgType, message, origExchange):
        event_type = NEWS_BULLETIN_TYPES.get(msgType, EventTypes.NEWS_BULLETIN)
        self._dispatch(event_type, id=msgId, message=message, exchange=origExchange)

    # Scanners and reports

    def scannerData(self, reqId, rank, contractDetails, distance, benchmark,
                    projection, legsStr):
        self._dispatch(EventTypes.SCAN_RESULT, request_id=reqId, rank=rank,
                       contract_details=contractDetails, distance=distance,
                       benchmark=benchmark, projection=projection, legs=legsStr)

    def scannerDataEnd(self, reqId):
        self._dispatch(EventTypes.SCAN_END, request_id=reqId)

    def fundamentalData(self, reqId, data):
        self._dispatch(EventTypes.FUNDAMENTAL_DATA, request_id=reqId, report=data)
