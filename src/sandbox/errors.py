"""
サンドボックスエラー定義モジュール。

ライフサイクル管理の各段階で発生する例外を型として定義する。
全ての例外はSandboxErrorを継承する。
"""

from collections.abc import Sequence


class SandboxError(Exception):
    """サンドボックス関連エラーの基底クラス。

    Attributes:
        message: エラーメッセージ
        sandbox_id: 対象サンドボックスのID(不明な場合はNone)
        cause: 原因となった例外
    """

    def __init__(
        self,
        message: str,
        sandbox_id: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.sandbox_id = sandbox_id
        self.cause = cause


class ResourceExhausted(SandboxError):
    """走査範囲内に空きポートが無い場合にraiseされる。"""

    def __init__(self, start_port: int, window: int) -> None:
        super().__init__(f"No available port in range {start_port}-{start_port + window - 1}")
        self.start_port = start_port
        self.window = window


class ProvisioningFailure(SandboxError):
    """プロビジョニングのいずれかの段階が失敗した場合にraiseされる。

    Attributes:
        stage: 失敗した段階名(allocate_port, scaffold, spawn など)
    """

    def __init__(
        self,
        stage: str,
        cause: Exception | None = None,
        sandbox_id: str | None = None,
    ) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Provisioning failed at stage '{stage}'{detail}",
            sandbox_id=sandbox_id,
            cause=cause,
        )
        self.stage = stage


class ProcessSpawnFailure(SandboxError):
    """開発サーバーの起動で有効なPIDが得られなかった場合にraiseされる。"""


class HealthCheckTimeout(SandboxError):
    """ポートがリトライ上限までに応答しなかった場合にraiseされる。"""

    def __init__(self, port: int, attempts: int, last_error: str | None = None) -> None:
        super().__init__(
            f"Server on port {port} did not become ready after {attempts} attempts"
            + (f" (last error: {last_error})" if last_error else "")
        )
        self.port = port
        self.attempts = attempts
        self.last_error = last_error


class ConfigValidationFailure(SandboxError):
    """プロキシ設定の構文検証に失敗した場合にraiseされる。

    この例外が発生した時点で、新しい設定は無効化済みであり
    既存のルートは引き続き有効である。
    """

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class InvalidUserName(SandboxError):
    """ユーザー名やサブドメインがDNS/ファイルシステムで安全でない場合にraiseされる。"""


class PathTraversal(SandboxError):
    """相対パスがサンドボックスディレクトリ外を指す場合にraiseされる。"""

    def __init__(self, path: str) -> None:
        super().__init__(f"Path escapes sandbox directory: {path}")
        self.path = path


class FileNotFound(SandboxError):
    """読み取り対象のファイルが存在しない場合にraiseされる。"""

    def __init__(self, path: str) -> None:
        super().__init__(f"File not found: {path}")
        self.path = path


class ExecError(SandboxError):
    """外部コマンドが失敗した場合にraiseされる。

    Attributes:
        command: 実行したコマンド(argv)
        exit_code: 終了コード(タイムアウト時はNone)
        stderr: 標準エラー出力
    """

    def __init__(
        self,
        command: Sequence[str],
        exit_code: int | None,
        stderr: str = "",
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Command {' '.join(command)!r} exited with code {exit_code}: {stderr}"
        )
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr


class CommandTimeout(ExecError):
    """外部コマンドがタイムアウトした場合にraiseされる。"""

    def __init__(self, command: Sequence[str], timeout: float) -> None:
        super().__init__(
            command,
            exit_code=None,
            message=f"Command {' '.join(command)!r} timed out after {timeout}s",
        )
        self.timeout = timeout


class PackageInstallFailure(SandboxError):
    """依存パッケージのインストールに失敗した場合にraiseされる。"""

    def __init__(self, packages: Sequence[str], stderr: str = "") -> None:
        target = ", ".join(packages) or "base dependencies"
        super().__init__(f"Failed to install {target}")
        self.packages = list(packages)
        self.stderr = stderr


class SandboxNotActive(SandboxError):
    """アクティブなサンドボックスが必要な操作で、存在しない場合にraiseされる。"""
