"""結果フォーマッターモジュール。

サンドボックス操作の結果をSlack投稿用のテキストに整形する。
Slackのメッセージ上限を超える場合は末尾を切り詰める。
"""

from src.sandbox.errors import ProvisioningFailure, SandboxError
from src.sandbox.models import (
    InstallResult,
    KillResult,
    RestartResult,
    SandboxRecord,
    StatusReport,
)

SLACK_MESSAGE_LIMIT = 4000
TRUNCATION_MARKER = "\n…(省略)"


def truncate(text: str, limit: int = SLACK_MESSAGE_LIMIT) -> str:
    """上限を超えるテキストを切り詰める。"""
    if len(text) <= limit:
        return text
    return text[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def format_created(record: SandboxRecord) -> str:
    lines = [
        ":white_check_mark: サンドボックスを作成しました",
        f"• URL: {record.url}",
        f"• 直接アクセス: {record.fallback_url}",
        f"• ID: `{record.sandbox_id}`",
        f"• ユーザー名: `{record.user_name}`",
        f"• ポート: {record.port}",
    ]
    return "\n".join(lines)


def format_killed(result: KillResult) -> str:
    if result.killed:
        return ":wastebasket: サンドボックスを破棄しました"
    return "アクティブなサンドボックスはありません"


def format_status(report: StatusReport) -> str:
    """status操作の結果を整形する。

    追跡ファイルは件数が多い場合があるため、一覧はtruncateで上限内に収める。
    """
    if not report.active or report.record is None:
        return "アクティブなサンドボックスはありません"

    record = report.record
    health = ":large_green_circle: 稼働中" if report.healthy else ":red_circle: 停止"
    lines = [
        f"*{record.sandbox_id}* ({record.status.value})",
        f"• 状態: {health}",
        f"• URL: {record.url}",
        f"• ポート: {record.port}",
        f"• PID: {record.pid if record.pid is not None else '-'}",
        f"• ファイル数: {len(report.files_tracked)}",
    ]
    lines.extend(f"    `{path}`" for path in report.files_tracked)
    return truncate("\n".join(lines))


def format_restarted(result: RestartResult) -> str:
    return f":arrows_counterclockwise: 開発サーバーを再起動しました (PID: {result.pid})"


def format_installed(result: InstallResult) -> str:
    lines = []
    if result.installed:
        lines.append(f":package: インストール完了: {', '.join(result.installed)}")
        if result.pid is not None:
            lines.append(f"開発サーバーを再起動しました (PID: {result.pid})")
    if result.failed:
        lines.append(f":warning: インストール失敗: {', '.join(result.failed)}")
        if result.stderr:
            lines.append(f"```{result.stderr.strip()}```")
    return truncate("\n".join(lines) or "インストール対象のパッケージはありません")


def format_error(error: SandboxError) -> str:
    """SandboxErrorをユーザー向けのメッセージに整形する。"""
    if isinstance(error, ProvisioningFailure):
        return truncate(f":x: 作成に失敗しました (段階: {error.stage})\n{error.message}")
    return truncate(f":x: エラー: {error.message}")
