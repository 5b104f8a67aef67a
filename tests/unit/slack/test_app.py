"""
SlackBot実装の単体テスト。
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest


class TestSlackBotImpl:
    """SlackBotImpl のテスト。"""

    @pytest.fixture
    def mock_app(self) -> MagicMock:
        """モックされたSlack Appを返す。"""
        return MagicMock()

    @pytest.fixture
    def mock_handler(self) -> MagicMock:
        """モックされたSocketModeHandlerを返す。"""
        handler = MagicMock()
        handler.start_async = AsyncMock()
        handler.close_async = AsyncMock()
        return handler

    def test_implements_protocol(self, mock_app: MagicMock) -> None:
        """SlackBotImplがSlackBotプロトコルのメソッドを持つことを検証。"""
        from src.slack.app import SlackBot, SlackBotImpl

        impl = SlackBotImpl(app=mock_app, orchestrator=MagicMock())

        assert hasattr(impl, "start")
        assert hasattr(impl, "close")
        bot: SlackBot = impl
        assert bot is not None

    def test_registers_sandbox_command(self, mock_app: MagicMock) -> None:
        """初期化時に/sandboxコマンドを登録することを検証。"""
        from src.slack.app import SlackBotImpl

        SlackBotImpl(app=mock_app, orchestrator=MagicMock())

        mock_app.command.assert_called_once_with("/sandbox")
        registered = mock_app.command.return_value.call_args[0][0]
        assert callable(registered)

    @pytest.mark.asyncio
    async def test_start_initiates_socket_mode(
        self, mock_app: MagicMock, mock_handler: MagicMock
    ) -> None:
        """startメソッドがSocket Mode接続を開始することを検証。"""
        from src.slack.app import SlackBotImpl

        bot = SlackBotImpl(app=mock_app, orchestrator=MagicMock(), app_token="xapp-test-token")

        with patch("src.slack.app.SocketModeHandler", return_value=mock_handler) as handler_cls:
            await bot.start()

        handler_cls.assert_called_once_with(app=mock_app, app_token="xapp-test-token")
        mock_handler.start_async.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_requires_app_token(self, mock_app: MagicMock) -> None:
        """app_tokenが無い場合はValueErrorになることを検証。"""
        from src.slack.app import SlackBotImpl

        bot = SlackBotImpl(app=mock_app, orchestrator=MagicMock())

        with pytest.raises(ValueError):
            await bot.start()

    @pytest.mark.asyncio
    async def test_close(self, mock_app: MagicMock, mock_handler: MagicMock) -> None:
        """closeで接続を終了し、未接続時は何もしないことを検証。"""
        from src.slack.app import SlackBotImpl

        bot = SlackBotImpl(app=mock_app, orchestrator=MagicMock(), app_token="xapp-test-token")
        await bot.close()

        with patch("src.slack.app.SocketModeHandler", return_value=mock_handler):
            await bot.start()
        await bot.close()

        mock_handler.close_async.assert_called_once()
