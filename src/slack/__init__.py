"""
Slackモジュール。

/sandboxコマンドを受け付けるSlack Botの実装とハンドラを提供する。
"""

from src.slack.app import SlackBot, SlackBotImpl
from src.slack.handlers import build_sandbox_command_handler, handle_sandbox_command
from src.slack.result_formatter import SLACK_MESSAGE_LIMIT

__all__ = [
    "SLACK_MESSAGE_LIMIT",
    "SlackBot",
    "SlackBotImpl",
    "build_sandbox_command_handler",
    "handle_sandbox_command",
]
