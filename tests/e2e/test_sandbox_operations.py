"""
稼働中サンドボックスへの操作の統合テスト。

テスト対象:
- ファイルの書き込み・読み込み・一覧・削除と追跡情報
- ソースファイルのスナップショット取得
- パッケージインストールと開発サーバーの再起動
- サンドボックス内での任意コマンド実行
"""

from pathlib import Path

import pytest
from src.sandbox.errors import (
    FileNotFound,
    PathTraversal,
    ProcessSpawnFailure,
    SandboxNotActive,
)
from src.sandbox.models import SandboxStatus


class TestFileOperations:
    """ファイル操作のテスト。"""

    @pytest.mark.asyncio
    async def test_write_list_read_delete(self, running):
        """書き込んだファイルが一覧・読み込み・追跡に反映され、削除で消える。"""
        await running.write_file("src/components/Button.jsx", "export default () => null")

        assert "src/components/Button.jsx" in await running.list_files()
        assert await running.read_file("src/components/Button.jsx") == "export default () => null"
        assert "src/components/Button.jsx" in running.registry.tracked_files

        await running.delete_file("src/components/Button.jsx")

        assert "src/components/Button.jsx" not in await running.list_files()
        assert "src/components/Button.jsx" not in running.registry.tracked_files
        with pytest.raises(FileNotFound):
            await running.read_file("src/components/Button.jsx")

    @pytest.mark.asyncio
    async def test_list_excludes_node_modules(self, running):
        """node_modules配下は一覧に含まれない。"""
        directory = Path(running.registry.record.directory)
        (directory / "node_modules" / "react").mkdir(parents=True)
        (directory / "node_modules" / "react" / "index.js").write_text("")

        files = await running.list_files()

        assert not any(path.startswith("node_modules/") for path in files)
        assert "package.json" in files

    @pytest.mark.asyncio
    async def test_traversal_is_rejected(self, running, sandbox_root):
        """サンドボックス外への書き込みは拒否され、追跡もされない。"""
        with pytest.raises(PathTraversal):
            await running.write_file("../../etc/passwd", "x")

        assert "../../etc/passwd" not in running.registry.tracked_files
        assert not (sandbox_root.parent / "etc").exists()

    @pytest.mark.asyncio
    async def test_kill_clears_tracking(self, running):
        """kill後は追跡ファイルとキャッシュが空になる。"""
        await running.write_file("src/extra.js", "1")

        await running.kill()

        assert running.registry.tracked_files == set()
        assert running.registry.file_cache == {}

    @pytest.mark.asyncio
    async def test_operations_require_sandbox(self, orchestrator):
        """アクティブなサンドボックスが無い場合はSandboxNotActiveになる。"""
        with pytest.raises(SandboxNotActive):
            await orchestrator.write_file("a.js", "")
        with pytest.raises(SandboxNotActive):
            await orchestrator.list_files()
        with pytest.raises(SandboxNotActive):
            await orchestrator.run_command("ls")
        with pytest.raises(SandboxNotActive):
            await orchestrator.get_files()

    @pytest.mark.asyncio
    async def test_get_files_returns_sources_and_structure(self, running):
        """ソースファイルの内容と構造を返し、node_modulesと大きなファイルは含めない。"""
        directory = Path(running.registry.record.directory)
        (directory / "node_modules" / "react").mkdir(parents=True)
        (directory / "node_modules" / "react" / "index.js").write_text("module.exports = {}")
        (directory / "notes.txt").write_text("memo")
        (directory / "src" / "data.json").write_text("x" * 10_000)
        await running.write_file("src/components/Hero.jsx", "export default () => <h1>Hi</h1>")

        snapshot = await running.get_files()

        assert snapshot.files["src/components/Hero.jsx"] == "export default () => <h1>Hi</h1>"
        assert "package.json" in snapshot.files
        assert "notes.txt" not in snapshot.files
        assert "src/data.json" not in snapshot.files
        assert not any(path.startswith("node_modules/") for path in snapshot.files)
        assert "📁 components/" in snapshot.structure
        assert "node_modules" not in snapshot.structure


class TestInstallPackages:
    """パッケージインストールのテスト。"""

    @pytest.mark.asyncio
    async def test_install_restarts_dev_server(self, running, supervisor, fake_runner):
        """インストール成功時は新しいPIDで開発サーバーを再起動する。"""
        old_pid = running.registry.record.pid

        result = await running.install_packages(["axios", "axios", " lodash "])

        assert result.installed == ["axios", "lodash"]
        assert result.pid is not None and result.pid != old_pid
        assert running.registry.record.pid == result.pid
        assert not supervisor.is_alive(old_pid)
        assert supervisor.is_alive(result.pid)
        assert fake_runner.calls[-1]["cwd"] == running.registry.record.directory

    @pytest.mark.asyncio
    async def test_failed_install_leaves_server_running(self, running, supervisor, fake_runner):
        """インストール失敗時は稼働中のプロセスに触れない。"""
        old_pid = running.registry.record.pid
        fake_runner.respond("npm install --legacy-peer-deps left-pad", exit_code=1, stderr="E404")

        result = await running.install_packages(["left-pad"])

        assert result.failed == ["left-pad"]
        assert running.registry.record.pid == old_pid
        assert supervisor.is_alive(old_pid)

    @pytest.mark.asyncio
    async def test_install_detected(self, running, fake_runner):
        """ソースのimport文から検出したパッケージをインストールする。"""
        result = await running.install_detected(
            {"src/App.jsx": "import { motion } from 'framer-motion'\nimport './index.css'"}
        )

        assert result.installed == ["framer-motion"]
        assert fake_runner.calls[-1]["command"][-1] == "framer-motion"

    @pytest.mark.asyncio
    async def test_status_after_install_reports_new_process(self, running, supervisor):
        """インストール後のstatusは新しいPIDで稼働中と報告する。"""
        old_pid = running.registry.record.pid

        result = await running.install_packages(["axios"])
        report = await running.status()

        assert report.healthy is True
        assert report.record.status == SandboxStatus.RUNNING
        assert report.record.pid == result.pid != old_pid

    @pytest.mark.asyncio
    async def test_restart_failure_after_install_marks_error(
        self, running, supervisor, monkeypatch
    ):
        """インストール後の再起動に失敗した場合はPIDを外してERRORにする。"""
        old_pid = running.registry.record.pid
        monkeypatch.setattr(supervisor, "_dev_command", ["/nonexistent/dev-server"])

        with pytest.raises(ProcessSpawnFailure):
            await running.install_packages(["lodash"])

        record = running.registry.record
        assert record.pid is None
        assert record.status == SandboxStatus.ERROR
        assert not supervisor.is_alive(old_pid)

    @pytest.mark.asyncio
    async def test_restart_failure_after_detected_install_marks_error(
        self, running, supervisor, monkeypatch
    ):
        """検出インストール後の再起動失敗でもERRORになる。"""
        monkeypatch.setattr(supervisor, "_dev_command", ["/nonexistent/dev-server"])

        with pytest.raises(ProcessSpawnFailure):
            await running.install_detected({"src/App.jsx": "import axios from 'axios'"})

        assert running.registry.record.pid is None
        assert running.registry.record.status == SandboxStatus.ERROR


class TestRunCommand:
    """任意コマンド実行のテスト。"""

    @pytest.mark.asyncio
    async def test_runs_in_sandbox_directory(self, running, fake_runner):
        """コマンドはサンドボックスのディレクトリで実行される。"""
        fake_runner.respond("npm run lint", exit_code=2, stdout="", stderr="3 problems")

        result = await running.run_command("npm run lint")

        assert result.exit_code == 2
        assert result.stderr == "3 problems"
        assert fake_runner.calls[-1]["cwd"] == Path(running.registry.record.directory)
