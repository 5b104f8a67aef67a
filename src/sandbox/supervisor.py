"""
開発サーバープロセス管理モジュール。

開発サーバーの起動・生存確認・強制終了・再起動と、
サンドボックスディレクトリに限定した任意コマンドの実行を担当する。
"""

import asyncio
import logging
import os
import shlex
import signal
from collections.abc import Sequence
from pathlib import Path

from src.sandbox.errors import ProcessSpawnFailure, SandboxError
from src.sandbox.filesystem import resolve_within
from src.sandbox.models import CommandResult
from src.sandbox.runner import ProcessRunner

logger = logging.getLogger(__name__)

PORT_PLACEHOLDER = "{port}"


class ProcessSupervisor:
    """開発サーバープロセスのライフサイクルを管理する。

    起動したプロセスは新しいセッション(プロセスグループ)で実行するため、
    killはnpmが生成した子プロセス(vite等)もまとめて終了させる。

    Attributes:
        _runner: 任意コマンド実行に使うProcessRunner
        _dev_command: 開発サーバーのargv({port}を置換する)
        _runtime_user: プロセスを実行するユーザー
        _command_timeout: 任意コマンドのデフォルトタイムアウト
        _kill_grace_seconds: kill後に終了を待つ秒数
        _processes: このインスタンスが起動したプロセス(PIDをキーとする)
    """

    def __init__(
        self,
        runner: ProcessRunner,
        dev_command: Sequence[str],
        runtime_user: str | None = None,
        command_timeout: float = 60.0,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self._runner = runner
        self._dev_command = list(dev_command)
        self._runtime_user = runtime_user
        self._command_timeout = command_timeout
        self._kill_grace_seconds = kill_grace_seconds
        self._processes: dict[int, asyncio.subprocess.Process] = {}

    def build_dev_command(self, port: int) -> list[str]:
        """ポートを埋め込んだ開発サーバーのargvを返す。"""
        return [arg.replace(PORT_PLACEHOLDER, str(port)) for arg in self._dev_command]

    async def spawn(self, directory: str | Path, port: int) -> int:
        """開発サーバーをバックグラウンドで起動する。

        Args:
            directory: サンドボックスディレクトリ
            port: バインドするポート

        Returns:
            起動したプロセスのPID

        Raises:
            ProcessSpawnFailure: 起動に失敗した、または有効なPIDが得られなかった場合
        """
        argv = self.build_dev_command(port)
        logger.info("Starting dev server in %s on port %d: %s", directory, port, argv)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(directory),
                user=self._runtime_user,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("Failed to start dev server in %s: %s", directory, e)
            raise ProcessSpawnFailure(f"Failed to start development server: {e}", cause=e) from e

        pid = process.pid
        if not isinstance(pid, int) or pid <= 0:
            raise ProcessSpawnFailure(f"Failed to obtain dev server PID: {pid!r}")

        self._processes[pid] = process
        logger.info("Dev server started with PID %d", pid)
        return pid

    def is_alive(self, pid: int) -> bool:
        """プロセスが生存しているかを確認する(シグナル0による確認)。

        Args:
            pid: 確認するPID

        Returns:
            生存している場合True
        """
        process = self._processes.get(pid)
        if process is not None and process.returncode is not None:
            return False

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # 存在するがシグナルを送る権限が無い
            return True
        return True

    async def kill(self, pid: int) -> None:
        """プロセスを強制終了する。

        既に終了しているプロセスは成功として扱う。

        Args:
            pid: 終了するPID

        Raises:
            SandboxError: 権限不足などでシグナルを送れなかった場合
        """
        process = self._processes.pop(pid, None)
        logger.info("Killing process %d", pid)

        try:
            if process is not None:
                # start_new_sessionで起動したため、PGIDはPIDと等しい
                os.killpg(pid, signal.SIGKILL)
            else:
                os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            logger.info("Process %d was already dead", pid)
        except PermissionError as e:
            logger.error("Not permitted to kill process %d: %s", pid, e)
            raise SandboxError(f"Not permitted to kill process {pid}", cause=e) from e

        if process is None:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_grace_seconds)
        except TimeoutError:
            logger.warning(
                "Process %d did not exit within %ss after SIGKILL",
                pid,
                self._kill_grace_seconds,
            )

    async def restart(self, directory: str | Path, port: int, old_pid: int | None) -> int:
        """開発サーバーを再起動する。

        Args:
            directory: サンドボックスディレクトリ
            port: バインドするポート(変更しない)
            old_pid: 終了させるPID(存在しない場合も許容)

        Returns:
            新しいPID
        """
        if old_pid is not None:
            await self.kill(old_pid)
        return await self.spawn(directory, port)

    async def run_command(
        self,
        directory: str | Path,
        command: str | Sequence[str],
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """サンドボックスディレクトリ内で任意のコマンドを実行する。

        非0終了は例外にせず、結果として返す。

        Args:
            directory: サンドボックスディレクトリ
            command: argvまたはシェル風の文字列(shlexで分割する)
            cwd: directoryからの相対作業ディレクトリ
            timeout: タイムアウト秒数(省略時は設定値)

        Returns:
            実行結果

        Raises:
            PathTraversal: cwdがdirectory外を指す場合
            CommandTimeout: タイムアウトした場合
        """
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise ValueError("Command is required")

        working_dir = resolve_within(Path(directory), cwd) if cwd else Path(directory)
        logger.info("Running sandbox command in %s: %s", working_dir, argv)

        return await self._runner.run(
            argv,
            cwd=working_dir,
            timeout=timeout or self._command_timeout,
            user=self._runtime_user,
            check=False,
        )
