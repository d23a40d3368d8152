"""Main entry point for the bridge arbitrage engine."""

import asyncio
import signal
import sys
from typing import Dict, List, Optional
import click
from dotenv import load_dotenv
from loguru import logger

from .config import Config, get_config
from .errors import ValidationError
from .exchanges.base import ExchangeAdapter
from .exchanges.ccxt_exchange import CcxtExchange
from .exchanges.paper import PaperExchange, PaperNetwork
from .core.quotes import PriceCache
from .core.scanner import PathScanner
from .core.scheduler import MultiBridgeScheduler
from .core.risk import RiskCalculator, TradeSizing
from .core.rate_limiter import AdmissionControl, ExecutionQueue, RateLimiter
from .core.validator import DepositCredentials, PreFlightValidator
from .core.executor import ExecutionOrchestrator
from .storage.db import ExecutionHistory
from .alerts.telegram import TelegramNotifier
from .server import ApiServer

CONSOLE_FORMAT = ("<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
                  "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>")
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


class BridgeArbBot:
    """Builds every component once and hands them to each other."""

    def __init__(self, config: Config, exchanges: Optional[Dict[str, ExchangeAdapter]] = None):
        self.config = config
        self.mode = config.execution.mode
        self.network: Optional[PaperNetwork] = None
        self.exchanges = exchanges if exchanges is not None else self._init_exchanges()

        self.price_cache = PriceCache(config, self.exchanges)
        self.scanner = PathScanner(config, self.price_cache)
        self.scheduler = MultiBridgeScheduler(config, self.scanner, venues=list(self.exchanges))
        self.risk = RiskCalculator(config.risk)
        self.rate_limiter = RateLimiter(config.rate_limits.min_interval_ms)
        self.admission = AdmissionControl()
        self.queue = ExecutionQueue(self.rate_limiter, config.rate_limits.global_delay_ms)
        self.validator = PreFlightValidator(config, self.exchanges, self.price_cache,
                                            self.scanner, self.risk)
        self.history_store = ExecutionHistory(config.storage.db_path,
                                              config.execution.history_limit)
        self.notifier = TelegramNotifier(config.alerts) if config.alerts else None
        self.orchestrator = ExecutionOrchestrator(
            config, self.exchanges, self.validator, self.admission, self.queue, self.risk,
            history_store=self.history_store, notifier=self.notifier,
        )
        self.server = ApiServer(self)

        self.running = False
        self._stop_event: Optional[asyncio.Event] = None

        logger.info(f"Bridge arbitrage bot initialized in {self.mode.upper()} mode")
        logger.info(f"Venues: {list(self.exchanges)}")
        logger.info(f"Bridges: {config.scan.bridge_assets}, currencies: {config.scan.currencies}")
        logger.info(f"Max trade: {config.risk.max_trade_amount_ref:,.2f}, "
                    f"min profit: {config.validation.min_profit_percent}%")

    def _init_exchanges(self) -> Dict[str, ExchangeAdapter]:
        """Live mode gets ccxt adapters; paper mode wraps public ccxt prices in paper venues."""
        exchanges: Dict[str, ExchangeAdapter] = {}
        timeout_ms = self.config.exchanges.timeout_ms

        if self.config.is_live:
            for name in self.config.exchanges.enabled:
                account = self.config.get_account(name)
                exchanges[name] = CcxtExchange(name, account, timeout_ms)
                logger.info(f"{name} exchange initialized")
            return exchanges

        self.network = PaperNetwork(self.config.paper.transfer_delay_s)
        for name in self.config.exchanges.enabled:
            venue = PaperExchange(
                name,
                balances=self.config.paper.balances.get(name, {}),
                taker_fee=self.config.get_taker_fee(name),
                market=CcxtExchange(name, None, timeout_ms),
                withdrawal_fees=self.config.fees.withdrawal,
            )
            account = self.config.get_account(name)
            for asset, deposit in account.deposit_addresses.items():
                self.network.register_address(venue, asset, deposit.address, deposit.tag)
            exchanges[name] = venue
            logger.info(f"{name} paper venue initialized")
        return exchanges

    def deposit_credentials(self, venue: str, asset: str) -> DepositCredentials:
        """Configured deposit address for an asset on a venue. Address is None if unknown."""
        deposit = self.config.get_account(venue).deposit_addresses.get(asset)
        if deposit is None:
            return DepositCredentials(address=None)
        return DepositCredentials(address=deposit.address, tag=deposit.tag)

    async def size_trade(self, venue: str, asset: str,
                         available_balance: Optional[float] = None) -> TradeSizing:
        """Recommended amount of `asset` to trade from `venue`, from its balance and live rate."""
        if available_balance is None:
            exchange = self.exchanges.get(venue)
            if exchange is None:
                raise ValidationError(f"{venue} is not configured")
            balance = await exchange.fetch_balance(asset)
            available_balance = balance.available

        rate = self.price_cache.reference_rate(venue, asset)
        sizing = self.risk.size_trade_amount(available_balance, asset, rate)
        logger.info(f"Sized {asset} on {venue}: {sizing.recommended_amount:.2f} of "
                    f"{available_balance:.2f} ({sizing.binding_constraint.value})")
        return sizing

    async def connect(self):
        """Connect exchanges and storage. Venues that fail to connect are dropped."""
        for name, exchange in list(self.exchanges.items()):
            try:
                await exchange.connect()
                logger.info(f"Connected to {name}")
            except Exception as e:
                logger.error(f"Failed to connect to {name}: {e}")
                self.exchanges.pop(name)
        self.scheduler.venues = list(self.exchanges)
        await self.history_store.connect()

    async def start(self, serve: bool = True):
        """Start the bot and block until stopped."""
        if self.running:
            return

        self._stop_event = asyncio.Event()
        try:
            await self.connect()
            if self.notifier:
                await self.notifier.test_connection()

            await self.queue.start()
            await self.price_cache.start()
            await self.scheduler.start()
            if serve and self.config.server.enabled:
                await self.server.start()

            self.running = True
            self._install_signal_handlers()
            await self._stop_event.wait()
        except Exception as e:
            logger.error(f"Failed to start bot: {e}")
            raise
        finally:
            await self.stop()

    def request_stop(self):
        if self._stop_event:
            self._stop_event.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows
                pass

    async def stop(self):
        """Stop the bot."""
        logger.info("Stopping bridge arbitrage bot")
        self.running = False
        try:
            await self.server.stop()
            await self.scheduler.stop()
            await self.price_cache.stop()
            await self.queue.stop()
            for exchange in self.exchanges.values():
                await exchange.disconnect()
            await self.history_store.disconnect()
            if self.notifier:
                await self.notifier.close()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    async def scan_once(self, bridge: str, venues: Optional[List[str]] = None,
                        assets: Optional[List[str]] = None, amount: Optional[float] = None):
        """Connect, take one price snapshot and scan a single bridge."""
        await self.connect()
        try:
            await self.price_cache.refresh()
            return self.scanner.scan(venues or list(self.exchanges),
                                     assets or list(self.config.scan.currencies),
                                     bridge, amount)
        finally:
            for exchange in self.exchanges.values():
                await exchange.disconnect()
            await self.history_store.disconnect()


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)
    if log_file:
        logger.add(log_file, level="DEBUG", format=FILE_FORMAT)


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [item.strip() for item in value.split(',') if item.strip()]


@click.group()
def cli():
    """Bridge-asset arbitrage engine CLI."""
    load_dotenv()


@cli.command()
@click.option('--mode', type=click.Choice(['paper', 'live']), default=None,
              help='Override execution mode from config')
@click.option('--config', 'config_path', type=click.Path(exists=True), default='config.yaml',
              help='Path to config file')
@click.option('--no-server', is_flag=True, help='Do not start the HTTP API')
def run(mode, config_path, no_server):
    """Run price cache, bridge scheduler and HTTP API."""
    config = get_config(config_path)
    if mode:
        config.execution.mode = mode
    setup_logging(config.logging.level, config.logging.file)

    bot = BridgeArbBot(config)
    try:
        asyncio.run(bot.start(serve=not no_server))
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
    except Exception as e:
        logger.error(f"Bot failed: {e}")
        sys.exit(1)


@cli.command()
@click.option('--config', 'config_path', type=click.Path(exists=True), default='config.yaml',
              help='Path to config file')
@click.option('--bridge', default=None, help='Bridge asset (default: scan.default_bridge)')
@click.option('--venues', default=None, help='Comma-separated venues')
@click.option('--assets', default=None, help='Comma-separated currencies')
@click.option('--amount', type=float, default=None, help='Input amount per path')
@click.option('--min-profit', type=float, default=None, help='Only show paths at or above this %')
@click.option('--limit', type=int, default=20, help='Rows to show (default: 20)')
def scan(config_path, bridge, venues, assets, amount, min_profit, limit):
    """Scan one bridge asset once and print the ranking."""
    config = get_config(config_path)
    config.execution.mode = "paper"
    setup_logging("WARNING")

    bot = BridgeArbBot(config)
    bridge = (bridge or config.scan.default_bridge).upper()
    result = asyncio.run(bot.scan_once(bridge, _split(venues), _split(assets), amount))

    rows = result.ranked if min_profit is None else result.profitable(min_profit)
    print(f"\n=== {bridge} PATHS ===")
    print(f"Evaluated: {result.evaluated_count}/{result.total_possible} "
          f"(skipped {result.skipped_count}) in {result.duration_ms} ms\n")
    for estimate in rows[:limit]:
        path = estimate.path
        print(f"{estimate.profit_percent:+8.3f}%  {estimate.profit_amount:+12.4f}  "
              f"{path.source_venue:>12} → {path.dest_venue:<12} {path.source_asset}")
    if not rows:
        print("No paths to show")


@cli.command()
@click.option('--config', 'config_path', type=click.Path(exists=True), default='config.yaml',
              help='Path to config file')
@click.option('--limit', default=20, type=int, help='Number of executions (default: 20)')
def history(config_path, limit):
    """Show recent executions."""
    async def show_history():
        config = get_config(config_path)
        store = ExecutionHistory(config.storage.db_path, config.execution.history_limit)
        try:
            await store.connect()
            return await store.recent(limit)
        finally:
            await store.disconnect()

    setup_logging("WARNING")
    executions = asyncio.run(show_history())
    print("\n=== RECENT EXECUTIONS ===")
    for entry in executions:
        profit = entry["actual_profit"]
        profit_text = f"{profit:+.4f}" if profit is not None else "n/a"
        flag = " ⚠️ FUND-LOSS RISK" if entry["fund_loss_risk"] else ""
        print(f"{entry['id']}  {entry['state']:<18} {entry['path_id']:<36} "
              f"{entry['amount']:>10.2f}  {profit_text}{flag}")
    if not executions:
        print("No executions recorded")


@cli.command()
@click.option('--config', 'config_path', type=click.Path(exists=True), default='config.yaml',
              help='Path to config file')
@click.option('--days', default=1, type=int, help='Days to summarize (default: 1)')
def status(config_path, days):
    """Show configuration and recent performance."""
    async def load_summary():
        config = get_config(config_path)
        store = ExecutionHistory(config.storage.db_path, config.execution.history_limit)
        try:
            await store.connect()
            return config, await store.get_summary(days)
        finally:
            await store.disconnect()

    setup_logging("WARNING")
    config, summary = asyncio.run(load_summary())
    print(f"""
=== BOT STATUS ===
Mode: {config.execution.mode.upper()}
Venues: {', '.join(config.exchanges.enabled)}
Bridges: {', '.join(config.scan.bridge_assets)}
Last {days}d:
- Executions: {summary['total']}
- Completed: {summary['completed']} ({summary['success_rate']:.1%})
- Profit: {summary['total_profit']:.4f}
- Avg slippage: {summary['avg_slippage']:.4f}
- By state: {summary['by_state']}
""")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
