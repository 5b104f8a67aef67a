"""
Pytest設定と共有フィクスチャ。

プロジェクト全体で共有されるテストダブルとフィクスチャを定義します。
外部コマンド(npm, nginx)、ポート確認、HTTP接続はダブルに置き換え、
開発サーバーの代わりに実プロセス(sleep)を起動します。
"""

from collections.abc import AsyncGenerator, Sequence
from pathlib import Path

import httpx
import pytest
from src.sandbox.errors import ConfigValidationFailure, ExecError
from src.sandbox.health import RetryPolicy
from src.sandbox.models import CommandResult
from src.sandbox.supervisor import ProcessSupervisor

# 開発サーバーの代わりに起動する長寿命プロセス
FAKE_DEV_COMMAND = ["sleep", "300"]


class FakeProcessRunner:
    """呼び出しを記録するProcessRunnerのテストダブル。

    既定では全コマンドが終了コード0で成功する。
    fail()で指定したプレフィックスに一致するコマンドは例外を送出し、
    respond()で指定したプレフィックスに一致するコマンドは指定結果を返す。
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self._failures: dict[str, Exception] = {}
        self._results: dict[str, tuple[int, str, str]] = {}

    def fail(self, prefix: str, error: Exception) -> None:
        self._failures[prefix] = error

    def respond(self, prefix: str, exit_code: int, stdout: str = "", stderr: str = "") -> None:
        self._results[prefix] = (exit_code, stdout, stderr)

    def commands(self) -> list[list[str]]:
        return [call["command"] for call in self.calls]

    async def run(
        self,
        command: Sequence[str],
        cwd: str | Path | None = None,
        timeout: float = 60.0,
        user: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        argv = list(command)
        self.calls.append(
            {"command": argv, "cwd": cwd, "timeout": timeout, "user": user, "check": check}
        )
        joined = " ".join(argv)
        for prefix, error in self._failures.items():
            if joined.startswith(prefix):
                raise error

        exit_code, stdout, stderr = 0, "", ""
        for prefix, result in self._results.items():
            if joined.startswith(prefix):
                exit_code, stdout, stderr = result

        if check and exit_code != 0:
            raise ExecError(argv, exit_code=exit_code, stderr=stderr)
        return CommandResult(
            command=argv,
            cwd=str(cwd) if cwd is not None else "",
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )


class FakePortProbe:
    """occupiedに含まれるポートを使用中とみなすPortProbeのテストダブル。"""

    def __init__(self, occupied: set[int] | None = None) -> None:
        self.occupied = occupied if occupied is not None else set()
        self.probed: list[int] = []

    async def is_in_use(self, port: int) -> bool:
        self.probed.append(port)
        return port in self.occupied


class FakeProxyController:
    """validate/reloadの呼び出し回数を記録するProxyControllerのテストダブル。"""

    def __init__(self) -> None:
        self.validate_calls = 0
        self.reload_calls = 0
        self.reject = False
        self.reload_error: Exception | None = None

    async def validate(self) -> None:
        self.validate_calls += 1
        if self.reject:
            raise ConfigValidationFailure("nginx: [emerg] unexpected \"}\"", output="emerg")

    async def reload(self) -> None:
        self.reload_calls += 1
        if self.reload_error is not None:
            raise self.reload_error


@pytest.fixture
def fake_runner() -> FakeProcessRunner:
    """成功を返すProcessRunnerのテストダブルを提供。"""
    return FakeProcessRunner()


@pytest.fixture
def fake_probe() -> FakePortProbe:
    """全ポートが空いているPortProbeのテストダブルを提供。"""
    return FakePortProbe()


@pytest.fixture
def fake_controller() -> FakeProxyController:
    """検証・リロードが成功するProxyControllerのテストダブルを提供。"""
    return FakeProxyController()


@pytest.fixture
async def supervisor(fake_runner: FakeProcessRunner) -> AsyncGenerator[ProcessSupervisor, None]:
    """sleepを開発サーバーとして起動するProcessSupervisorを提供。

    テスト終了時に残ったプロセスを全て終了させる。
    """
    sup = ProcessSupervisor(fake_runner, dev_command=FAKE_DEV_COMMAND, kill_grace_seconds=2.0)
    yield sup
    for pid in list(sup._processes):
        await sup.kill(pid)


@pytest.fixture
def ready_client() -> httpx.AsyncClient:
    """全リクエストに200を返すhttpxクライアントを提供。"""
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """待機時間の短いリトライポリシーを提供。"""
    return RetryPolicy(max_attempts=3, interval=0.01, timeout=5.0)
