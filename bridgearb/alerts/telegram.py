"""Telegram notifications for bridge arbitrage executions."""

import time
from typing import Optional
from loguru import logger
from telegram import Bot
from telegram.error import TelegramError

from ..config import AlertConfig


class TelegramNotifier:
    """Sends execution alerts to a Telegram chat. Logs only when unconfigured."""

    def __init__(self, alert_config: Optional[AlertConfig], timeout_s: float = 10.0):
        self.config = alert_config or AlertConfig()
        self.enabled = bool(self.config.telegram_token and self.config.telegram_chat_id)
        self.timeout_s = timeout_s
        self.sent_count = 0
        self.failed_count = 0
        self.bot: Optional[Bot] = Bot(token=self.config.telegram_token) if self.enabled else None
        self._initialized = False

        if not self.enabled:
            logger.warning("Telegram notifications disabled - missing token or chat ID")

    async def send_message(self, text: str, parse_mode: str = "HTML") -> bool:
        """Send a message to the alert chat. Returns False instead of raising on delivery errors."""
        if not self.enabled:
            logger.info(f"Telegram (disabled): {text}")
            return False

        try:
            if not self._initialized:
                await self.bot.initialize()
                self._initialized = True
            await self.bot.send_message(
                chat_id=self.config.telegram_chat_id,
                text=text,
                parse_mode=parse_mode,
                connect_timeout=self.timeout_s,
                read_timeout=self.timeout_s,
                write_timeout=self.timeout_s,
            )
            self.sent_count += 1
            return True
        except TelegramError as e:
            self.failed_count += 1
            logger.error(f"Failed to send Telegram notification: {e}")
            return False

    async def close(self):
        if self.bot and self._initialized:
            await self.bot.shutdown()
            self._initialized = False

    async def test_connection(self) -> bool:
        """Test Telegram connection."""
        if not self.enabled:
            return False

        ok = await self.send_message("🤖 Bridge arbitrage bot connected")
        if ok:
            logger.info("Telegram connection test passed")
        else:
            logger.error("Telegram connection test failed")
        return ok

    async def notify_execution(self, saga) -> bool:
        """Report a completed execution."""
        if not self.config.notify_all_executions:
            return False

        path = saga.path
        message = (
            f"✅ <b>EXECUTION COMPLETED</b>\n"
            f"Path: {path.description}\n"
            f"Amount: {saga.amount:.2f} {path.source_asset}\n"
            f"Estimated profit: {saga.estimated_profit:.4f}\n"
            f"Actual profit: {(saga.actual_profit or 0.0):.4f} {path.dest_asset}\n"
            f"Slippage: {(saga.slippage or 0.0):.4f}\n"
            f"Duration: {saga.duration_s:.1f}s\n"
            f"ID: {saga.id}"
        )
        return await self.send_message(message)

    async def notify_fund_loss_risk(self, saga) -> bool:
        """Alert on a failure that may have stranded funds."""
        path = saga.path
        failed_at = saga.failed_step.value if saga.failed_step else saga.state.value
        logger.critical(
            f"🚨 FUND LOSS RISK in saga {saga.id} at {failed_at}: {saga.error}"
        )
        if not self.config.notify_fund_loss_risk:
            return False

        message = (
            f"🚨 <b>FUND LOSS RISK</b>\n"
            f"Path: {path.description}\n"
            f"Failed at: {failed_at}\n"
            f"Error: {saga.error}\n"
            f"Withdrawal: {saga.withdrawal_id or 'n/a'}\n"
            f"ID: {saga.id}\n"
            f"Time: {time.strftime('%Y-%m-%d %H:%M:%S')}"
        )
        return await self.send_message(message)

    async def notify_deposit_timeout(self, saga) -> bool:
        """Alert that a withdrawal did not arrive in time and needs manual reconciliation."""
        path = saga.path
        logger.warning(f"⏰ Deposit timeout for saga {saga.id} (withdrawal {saga.withdrawal_id})")
        message = (
            f"⏰ <b>DEPOSIT TIMEOUT</b>\n"
            f"{path.bridge_asset} withdrawn from {path.source_venue} has not arrived at {path.dest_venue}\n"
            f"Withdrawal: {saga.withdrawal_id or 'n/a'}\n"
            f"Reconcile manually on {path.dest_venue} before retrying\n"
            f"ID: {saga.id}"
        )
        return await self.send_message(message)
