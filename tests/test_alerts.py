"""Test Telegram notifications."""

import pytest
from unittest.mock import AsyncMock, Mock, patch

from telegram.error import TelegramError, TimedOut

from bridgearb.alerts.telegram import TelegramNotifier
from bridgearb.config import AlertConfig
from bridgearb.core.saga import ExecutionSaga, SagaState
from bridgearb.core.types import ArbitragePath
from bridgearb.errors import FatalSafetyError


def _saga():
    path = ArbitragePath.build("binance", "kraken", "USDT", "USDT", "XRP")
    return ExecutionSaga(path=path, amount=100.0, estimated_profit=3.7)


class TestTelegramNotifier:
    """Test message routing without touching the network."""

    def setup_method(self):
        self.config = AlertConfig(telegram_token="123:abc", telegram_chat_id="42")

    @pytest.mark.asyncio
    async def test_disabled_without_credentials(self):
        notifier = TelegramNotifier(AlertConfig())

        assert not notifier.enabled
        assert await notifier.send_message("hello") is False
        assert await notifier.test_connection() is False

    @pytest.mark.asyncio
    async def test_completed_execution_message(self):
        notifier = TelegramNotifier(self.config)
        saga = _saga()
        saga.actual_profit = 3.74

        with patch.object(notifier, "send_message", AsyncMock(return_value=True)) as send:
            assert await notifier.notify_execution(saga)

        text = send.await_args.args[0]
        assert "EXECUTION COMPLETED" in text
        assert saga.id in text

    @pytest.mark.asyncio
    async def test_execution_notices_can_be_muted(self):
        config = AlertConfig(telegram_token="123:abc", telegram_chat_id="42",
                             notify_all_executions=False)
        notifier = TelegramNotifier(config)

        with patch.object(notifier, "send_message", AsyncMock(return_value=True)) as send:
            assert await notifier.notify_execution(_saga()) is False
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fund_loss_message(self):
        notifier = TelegramNotifier(self.config)
        saga = _saga()
        saga.advance(SagaState.VALIDATING)
        saga.fail(FatalSafetyError("missing tag"), SagaState.VALIDATION_FAILED)

        with patch.object(notifier, "send_message", AsyncMock(return_value=True)) as send:
            await notifier.notify_fund_loss_risk(saga)

        text = send.await_args.args[0]
        assert "FUND LOSS RISK" in text
        assert "validating" in text
        assert "missing tag" in text

    @pytest.mark.asyncio
    async def test_deposit_timeout_message(self):
        notifier = TelegramNotifier(self.config)
        saga = _saga()
        saga.withdrawal_id = "wd-9"

        with patch.object(notifier, "send_message", AsyncMock(return_value=True)) as send:
            await notifier.notify_deposit_timeout(saga)

        text = send.await_args.args[0]
        assert "DEPOSIT TIMEOUT" in text
        assert "wd-9" in text

    @pytest.mark.asyncio
    async def test_send_message_through_bot(self):
        notifier = TelegramNotifier(self.config, timeout_s=5.0)
        notifier.bot = Mock()
        notifier.bot.initialize = AsyncMock()
        notifier.bot.send_message = AsyncMock()

        assert await notifier.send_message("hello")
        assert await notifier.send_message("again")

        notifier.bot.initialize.assert_awaited_once()
        kwargs = notifier.bot.send_message.await_args.kwargs
        assert kwargs["chat_id"] == "42"
        assert kwargs["text"] == "again"
        assert kwargs["parse_mode"] == "HTML"
        assert kwargs["read_timeout"] == 5.0
        assert notifier.sent_count == 2

    @pytest.mark.asyncio
    async def test_delivery_errors_return_false(self):
        notifier = TelegramNotifier(self.config)
        notifier.bot = Mock()
        notifier.bot.initialize = AsyncMock()
        notifier.bot.send_message = AsyncMock(side_effect=[TimedOut(), TelegramError("Forbidden")])

        assert await notifier.send_message("hello") is False
        assert await notifier.send_message("hello") is False
        assert notifier.failed_count == 2
