"""
SlackBot実装モジュール。

/sandboxコマンドを受け付けるSlackBotプロトコルの実装を提供する。
- Protocol型でインターフェースを定義
- AsyncAppを使用し、全ハンドラをasync defで統一
- 依存性注入パターン(外部依存は引数で注入)
"""

import logging
from typing import Protocol

from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler as SocketModeHandler
from slack_bolt.async_app import AsyncApp

from src.slack.handlers import OrchestratorProtocol, build_sandbox_command_handler

logger = logging.getLogger(__name__)

SANDBOX_COMMAND = "/sandbox"


class SlackBot(Protocol):
    """SlackBotのインターフェース定義。"""

    async def start(self) -> None:
        """Socket Mode接続を開始する。"""
        ...

    async def close(self) -> None:
        """Socket Mode接続を終了する。"""
        ...


class SlackBotImpl:
    """SlackBotプロトコルの具体的な実装。

    slack-boltのAsyncAppに/sandboxコマンドを登録し、
    Socket Modeで接続してリアルタイムでコマンドを受信する。

    Attributes:
        _app: slack-boltのAsyncAppインスタンス
        _app_token: Socket Mode用のアプリトークン
        _handler: Socket Modeハンドラ
    """

    def __init__(
        self,
        app: AsyncApp,
        orchestrator: OrchestratorProtocol,
        app_token: str | None = None,
    ) -> None:
        """SlackBotImplを初期化し、/sandboxコマンドを登録する。

        Args:
            app: slack-boltのAsyncAppインスタンス
            orchestrator: サンドボックス操作を行うオーケストレーター
            app_token: Socket Mode用のアプリトークン(xapp-で始まる)
        """
        self._app = app
        self._app_token = app_token
        self._handler: SocketModeHandler | None = None

        self._app.command(SANDBOX_COMMAND)(build_sandbox_command_handler(orchestrator))

    async def start(self) -> None:
        """Socket Mode接続を開始する。

        Socket Modeを使用してSlackとのリアルタイム接続を確立する。
        この接続はWebSocket経由で維持され、外部公開URLを必要としない。

        Raises:
            ValueError: app_tokenが設定されていない場合
        """
        if self._app_token is None:
            msg = "app_token is required for Socket Mode"
            raise ValueError(msg)

        self._handler = SocketModeHandler(app=self._app, app_token=self._app_token)
        logger.info("Starting Socket Mode connection...")
        await self._handler.start_async()

    async def close(self) -> None:
        """Socket Mode接続を終了する。未接続の場合は何もしない。"""
        if self._handler is None:
            return
        await self._handler.close_async()
        self._handler = None
        logger.info("Socket Mode connection closed")
