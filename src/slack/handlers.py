"""
Slackコマンドハンドラモジュール。

/sandbox スラッシュコマンドのハンドラを提供する。
サブコマンド: create [name] | kill | status | restart | install <pkg...>
"""

import logging
import shlex
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, NamedTuple, Protocol

from src.sandbox.errors import SandboxError
from src.sandbox.models import (
    InstallResult,
    KillResult,
    RestartResult,
    SandboxRecord,
    StatusReport,
)
from src.slack.result_formatter import (
    format_created,
    format_error,
    format_installed,
    format_killed,
    format_restarted,
    format_status,
)

logger = logging.getLogger(__name__)

USAGE = (
    "使い方: `/sandbox create [name]` | `/sandbox kill` | `/sandbox status` | "
    "`/sandbox restart` | `/sandbox install <package...>`"
)


class OrchestratorProtocol(Protocol):
    """ハンドラが利用するLifecycleOrchestratorのインターフェース。"""

    async def create(self, user_name: str | None = None) -> SandboxRecord: ...

    async def kill(self, sandbox_id: str | None = None) -> KillResult: ...

    async def status(self, sandbox_id: str | None = None) -> StatusReport: ...

    async def restart(self, sandbox_id: str | None = None) -> RestartResult: ...

    async def install_packages(
        self, packages: Iterable[str], sandbox_id: str | None = None
    ) -> InstallResult: ...


class ParsedCommand(NamedTuple):
    """解析済みのサブコマンド。"""

    action: str
    args: list[str]


# 型エイリアス
AckFunction = Callable[[], Awaitable[None]]
RespondFunction = Callable[[str], Awaitable[None]]
CommandHandler = Callable[[dict[str, Any], AckFunction, RespondFunction], Awaitable[None]]


def parse_command(text: str) -> ParsedCommand | None:
    """コマンドテキストをサブコマンドと引数に分解する。

    Args:
        text: スラッシュコマンドのテキスト部分

    Returns:
        解析結果。テキストが空または引用符が閉じていない場合はNone
    """
    try:
        tokens = shlex.split(text)
    except ValueError:
        return None
    # 空の引用符("")は引数として扱わない
    tokens = [token for token in tokens if token.strip()]
    if not tokens:
        return None
    return ParsedCommand(action=tokens[0].lower(), args=tokens[1:])


async def handle_sandbox_command(
    command: dict[str, Any],
    ack: AckFunction,
    respond: RespondFunction,
    orchestrator: OrchestratorProtocol,
) -> None:
    """スラッシュコマンド /sandbox を処理する。

    即座にackを返し、サブコマンドに応じてオーケストレーターを呼び出す。
    SandboxErrorは整形してユーザーに返し、それ以外の例外は伝播させる。

    Args:
        command: スラッシュコマンドのデータ
        ack: 即座に応答するためのack関数
        respond: 後続のレスポンス送信用関数
        orchestrator: サンドボックス操作を行うオーケストレーター
    """
    # 即座にackを返す(3秒以内の応答要件)
    await ack()

    user_id = command.get("user_id", "")
    command_text = command.get("text", "")

    logger.info(
        "Received /sandbox command",
        extra={"user_id": user_id, "command_text": command_text},
    )

    parsed = parse_command(command_text)
    if parsed is None:
        await respond(USAGE)
        return

    try:
        if parsed.action == "create":
            name = parsed.args[0] if parsed.args else None
            await respond(f"<@{user_id}> サンドボックスを作成中...")
            record = await orchestrator.create(name)
            await respond(format_created(record))
        elif parsed.action == "kill":
            await respond(format_killed(await orchestrator.kill()))
        elif parsed.action == "status":
            await respond(format_status(await orchestrator.status()))
        elif parsed.action == "restart":
            await respond(format_restarted(await orchestrator.restart()))
        elif parsed.action == "install":
            if not parsed.args:
                await respond(USAGE)
                return
            await respond(f"<@{user_id}> インストール中: {', '.join(parsed.args)}")
            await respond(format_installed(await orchestrator.install_packages(parsed.args)))
        else:
            logger.warning("Unknown /sandbox subcommand: %s", parsed.action)
            await respond(USAGE)
    except SandboxError as e:
        logger.error("/sandbox %s failed: %s", parsed.action, e)
        await respond(format_error(e))


def build_sandbox_command_handler(orchestrator: OrchestratorProtocol) -> CommandHandler:
    """オーケストレーターを束縛した/sandboxハンドラを生成する。

    slack-boltは引数名で依存を注入するため、command/ack/respondのみを受け取る関数を返す。
    """

    async def handler(
        command: dict[str, Any], ack: AckFunction, respond: RespondFunction
    ) -> None:
        await handle_sandbox_command(command, ack, respond, orchestrator)

    return handler
