"""
外部コマンド実行モジュール。

シェルを介さずにargvでサブプロセスを実行し、
標準出力・標準エラー出力・終了コードを取得する。
全ての呼び出しはタイムアウト付きで、超過時はプロセスを強制終了して
CommandTimeoutをraiseする。
"""

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from src.sandbox.errors import CommandTimeout, ExecError
from src.sandbox.models import CommandResult

logger = logging.getLogger(__name__)


class ProcessRunner(Protocol):
    """外部コマンド実行のプロトコル定義。

    実OS、コンテナランタイム、テストダブルのいずれでも
    同じオーケストレーションロジックを使えるように抽象化する。
    """

    async def run(
        self,
        command: Sequence[str],
        cwd: str | Path | None = None,
        timeout: float = 60.0,
        user: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        """コマンドを実行して完了を待つ。

        Args:
            command: 実行するargv
            cwd: 作業ディレクトリ
            timeout: タイムアウト秒数
            user: 実行ユーザー(Noneの場合は現在のユーザー)
            check: Trueの場合、非0終了でExecErrorをraiseする

        Returns:
            実行結果

        Raises:
            ExecError: check=Trueで非0終了した場合、または起動できなかった場合
            CommandTimeout: タイムアウトした場合
        """
        ...


class AsyncProcessRunner:
    """asyncioのサブプロセスAPIを使用したProcessRunner実装。"""

    async def run(
        self,
        command: Sequence[str],
        cwd: str | Path | None = None,
        timeout: float = 60.0,
        user: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        argv = list(command)
        logger.debug("Running command: %s (cwd=%s, timeout=%s)", argv, cwd, timeout)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                user=user,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Failed to start command %s: %s", argv, e)
            raise ExecError(argv, exit_code=None, stderr=str(e)) from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except TimeoutError as e:
            logger.warning("Command timed out after %ss: %s", timeout, argv)
            process.kill()
            await process.wait()
            raise CommandTimeout(argv, timeout) from e

        result = CommandResult(
            command=argv,
            cwd=str(cwd) if cwd is not None else "",
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode(errors="replace").strip(),
            stderr=stderr_bytes.decode(errors="replace").strip(),
        )

        if check and not result.success:
            logger.warning(
                "Command failed: %s, exit_code=%d, stderr=%s",
                argv,
                result.exit_code,
                result.stderr,
            )
            raise ExecError(argv, exit_code=result.exit_code, stderr=result.stderr)

        return result
