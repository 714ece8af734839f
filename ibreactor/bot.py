#!/usr/bin/env python3
"""
ibreactor - command line entry point

Connects to IB Gateway / TWS and runs one synchronous query.

Usage:
    ibreactor time
    ibreactor contract SPY
    ibreactor price SPY --exchange SMART --currency USD
    ibreactor history SPY --duration 5 --duration-unit days --bar-size 1 --bar-unit hour
    ibreactor orders
    ibreactor executions
    ibreactor account
"""

import argparse
import asyncio
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv
from ib_async import Stock
from loguru import logger

from .core.event_bus import Event
from .core.gateway import Gateway, GatewayConfig
from .core.synchronous import SyncClient, is_error_result


def configure_logging(level: Optional[str] = None):
    """Route loguru output to stderr at LOG_LEVEL"""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level or os.getenv('LOG_LEVEL', 'INFO'),
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
    )


class GatewaySession:
    """Gateway connection plus synchronous client for one command"""

    def __init__(self, config: GatewayConfig):
        self.config = config
        self.gateway = Gateway(config)
        self.client = SyncClient(self.gateway, timeout=config.request_timeout)

    async def connect(self) -> bool:
        """Connect to IB Gateway"""
        if self.config.trading_mode == 'paper':
            logger.info("PAPER TRADING MODE")
        else:
            logger.warning("LIVE MODE - orders use a real money account")

        try:
            await self.gateway.connect()
            return True
        except Exception as e:
            logger.error(f"Connection error: {e}")
            return False

    async def shutdown(self):
        """Graceful shutdown"""
        logger.info("Shutting down...")
        await self.gateway.close()
        logger.info("Shutdown complete")

    async def run(self, args: argparse.Namespace):
        contract = None
        if getattr(args, 'symbol', None):
            contract = Stock(args.symbol, args.exchange, args.currency)

        if args.command == 'time':
            result = await self.client.get_time()
        elif args.command == 'contract':
            result = await self.client.get_contract_details(contract)
        elif args.command == 'price':
            result = await self.client.get_current_price(contract)
        elif args.command == 'history':
            result = await self.client.get_historical_data(
                contract, None, args.duration, args.duration_unit,
                args.bar_size, args.bar_unit, args.what_to_show, not args.all_hours
            )
        elif args.command == 'orders':
            result = await self.client.get_open_orders()
        elif args.command == 'executions':
            result = await self.client.get_executions()
        elif args.command == 'account':
            result = await self.client.get_account_snapshot(args.account)
        else:
            raise ValueError(f"Unknown command: {args.command}")

        report(result)
        return result


def report(result):
    """Log a synchronous call result"""
    if is_error_result(result):
        logger.error(f"Request failed: {result.get('code')} "
                     f"{result.get('message') or result.get('exception')}")
    elif isinstance(result, dict):
        for field, value in sorted(result.items()):
            logger.info(f"  {field}: {value}")
    elif isinstance(result, list):
        logger.info(f"{len(result)} results")
        for item in result:
            if isinstance(item, Event):
                logger.info(f"  {item!r}")
            else:
                logger.info(f"  {item}")
    else:
        logger.info(f"{result}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Query TWS / IB Gateway synchronously")
    parser.add_argument('--host', type=str, default=None, help='Gateway host (IB_GATEWAY_HOST)')
    parser.add_argument('--port', type=int, default=None, help='Gateway port (IB_GATEWAY_PORT)')
    parser.add_argument('--client-id', type=int, default=None, help='Client id (IB_CLIENT_ID)')
    parser.add_argument('--timeout', type=float, default=None,
                        help='Seconds to wait for a response (REQUEST_TIMEOUT)')
    parser.add_argument('--log-level', type=str, default=None, help='Log level (LOG_LEVEL)')

    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('time', help='Server time')
    commands.add_parser('orders', help='Open orders')
    commands.add_parser('executions', help="Today's executions")
    account = commands.add_parser('account', help='Account values and portfolio')
    account.add_argument('--account', type=str, default='', help='Account code')

    for name, help_text in [('contract', 'Contract details'),
                            ('price', 'Market data snapshot'),
                            ('history', 'Historical bars')]:
        command = commands.add_parser(name, help=help_text)
        command.add_argument('symbol', type=str)
        command.add_argument('--exchange', type=str, default='SMART')
        command.add_argument('--currency', type=str, default='USD')
        if name == 'history':
            command.add_argument('--duration', type=int, default=1)
            command.add_argument('--duration-unit', type=str, default='days')
            command.add_argument('--bar-size', type=int, default=5)
            command.add_argument('--bar-unit', type=str, default='minutes')
            command.add_argument('--what-to-show', type=str, default='trades')
            command.add_argument('--all-hours', action='store_true', default=False,
                                 help='Include data outside regular trading hours')

    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    config = GatewayConfig.from_env(
        host=args.host, port=args.port, client_id=args.client_id,
        request_timeout=args.timeout
    )
    session = GatewaySession(config)

    if not await session.connect():
        logger.error("Failed to establish connection. Exiting.")
        return 1

    try:
        result = await session.run(args)
        return 1 if is_error_result(result) else 0
    except asyncio.TimeoutError:
        logger.error(f"No response within {config.request_timeout}s")
        return 2
    finally:
        await session.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    load_dotenv()
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
        return 130


if __name__ == "__main__":
    sys.exit(main())
