"""結果フォーマッターの単体テスト。"""

import time

from src.sandbox.errors import ProvisioningFailure, SandboxNotActive
from src.sandbox.models import (
    InstallResult,
    KillResult,
    SandboxRecord,
    SandboxStatus,
    StatusReport,
)
from src.slack.result_formatter import (
    SLACK_MESSAGE_LIMIT,
    format_created,
    format_error,
    format_installed,
    format_killed,
    format_status,
    truncate,
)


def _record(**overrides) -> SandboxRecord:
    values = {
        "sandbox_id": "sandbox_1700000000000",
        "user_name": "alice42",
        "port": 3000,
        "directory": "/srv/alice42",
        "subdomain": "alice42.ai.maninfini.com",
        "url": "https://alice42.ai.maninfini.com",
        "fallback_url": "http://127.0.0.1:3000",
        "pid": 1234,
        "status": SandboxStatus.RUNNING,
        "created_at": time.time(),
    }
    values.update(overrides)
    return SandboxRecord(**values)


class TestTruncate:
    """truncate のテスト。"""

    def test_short_text_unchanged(self):
        """上限以下のテキストはそのまま返す。"""
        assert truncate("a" * SLACK_MESSAGE_LIMIT) == "a" * SLACK_MESSAGE_LIMIT

    def test_long_text_is_cut_to_limit(self):
        """上限を超えるテキストは上限の長さに切り詰める。"""
        result = truncate("a" * (SLACK_MESSAGE_LIMIT + 100))
        assert len(result) == SLACK_MESSAGE_LIMIT
        assert result.endswith("(省略)")


class TestFormatters:
    """各フォーマッターのテスト。"""

    def test_created_includes_urls(self):
        """作成結果は公開URLと直接アクセスURLを含む。"""
        text = format_created(_record())
        assert "https://alice42.ai.maninfini.com" in text
        assert "http://127.0.0.1:3000" in text

    def test_killed(self):
        """破棄した場合としなかった場合で異なるメッセージになる。"""
        assert format_killed(KillResult(killed=True)) != format_killed(KillResult(killed=False))

    def test_status_inactive(self):
        """非アクティブの場合はその旨を返す。"""
        assert "ありません" in format_status(StatusReport(active=False, healthy=False))

    def test_status_stopped(self):
        """停止を観測した場合は停止と表示する。"""
        report = StatusReport(
            active=True, healthy=False, record=_record(status=SandboxStatus.STOPPED)
        )
        text = format_status(report)
        assert "stopped" in text
        assert "停止" in text

    def test_status_with_many_files_fits_limit(self):
        """追跡ファイルが多くても上限内に収める。"""
        files = [f"src/components/Component{i}.jsx" for i in range(500)]
        report = StatusReport(active=True, healthy=True, record=_record(), files_tracked=files)
        assert len(format_status(report)) <= SLACK_MESSAGE_LIMIT

    def test_installed_with_failures(self):
        """成功と失敗の両方を表示する。"""
        text = format_installed(
            InstallResult(installed=["axios"], failed=["bad!"], pid=99, stderr="E404")
        )
        assert "axios" in text
        assert "bad!" in text
        assert "99" in text
        assert "E404" in text

    def test_installed_nothing(self):
        """対象が無い場合はその旨を返す。"""
        assert "ありません" in format_installed(InstallResult())

    def test_error_formats(self):
        """ProvisioningFailureは段階名を、その他はメッセージを含む。"""
        assert "scaffold" in format_error(ProvisioningFailure("scaffold"))
        assert "No active sandbox" in format_error(SandboxNotActive("No active sandbox"))
