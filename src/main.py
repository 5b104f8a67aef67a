"""
アプリケーションのエントリーポイント。

サンドボックスを操作するSlack BotをSocket Modeで起動する。
環境変数の読み込み、オーケストレーターの構築、AsyncAppの作成、Socket Mode接続を行う。
"""

import asyncio
import logging

from slack_bolt.async_app import AsyncApp

from src.config import get_settings
from src.sandbox import LifecycleOrchestrator
from src.slack import SlackBotImpl

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main() -> None:
    """アプリケーションのエントリーポイント。

    以下の処理を順次実行する:
    1. 環境変数から設定を読み込み
    2. LifecycleOrchestratorを構築
    3. AsyncAppを作成
    4. SlackBotImplを作成して/sandboxコマンドを登録し、Socket Modeで起動

    Raises:
        ValueError: Slackのトークンが設定されていない場合
    """
    settings = get_settings()
    if settings.slack_bot_token is None or settings.slack_app_token is None:
        msg = "SLACK_BOT_TOKEN and SLACK_APP_TOKEN are required"
        raise ValueError(msg)

    orchestrator = LifecycleOrchestrator.from_settings(settings)

    # AsyncAppの作成
    app = AsyncApp(token=settings.slack_bot_token)

    # SlackBotの作成と起動
    bot = SlackBotImpl(
        app=app,
        orchestrator=orchestrator,
        app_token=settings.slack_app_token,
    )

    logger.info("Starting Slack Bot...")
    try:
        await bot.start()
    finally:
        await orchestrator.kill()
        await bot.close()


def run() -> None:
    """コンソールスクリプト用のエントリーポイント。"""
    asyncio.run(main())


if __name__ == "__main__":
    run()
