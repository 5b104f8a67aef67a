"""
依存パッケージインストールモジュール。

サンドボックスにnpmパッケージをインストールし、成功した場合のみ
開発サーバーを再起動する。失敗した場合、稼働中のプロセスには触れない。
ソースコードのimport文からパッケージを検出する機能も提供する。
"""

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from src.sandbox.errors import ExecError, PackageInstallFailure
from src.sandbox.models import InstallResult
from src.sandbox.runner import ProcessRunner
from src.sandbox.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

# npmパッケージ名(スコープ・バージョン指定を許容)
PACKAGE_NAME_PATTERN = re.compile(
    r"^(?:@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*(?:@[A-Za-z0-9.^~<>=*|+-]+)?$"
)

IMPORT_PATTERN = re.compile(
    r"""import\s+(?:[\w*{}\s,]+?\s+from\s+)?['"]([^'"]+)['"]"""
)
REQUIRE_PATTERN = re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]\s*\)""")
SOURCE_SUFFIXES = (".js", ".jsx", ".ts", ".tsx")

NODE_BUILTINS = frozenset(
    {"fs", "path", "url", "crypto", "os", "util", "http", "https", "stream", "events"}
)


def normalize_packages(packages: Iterable[str]) -> list[str]:
    """パッケージ名の前後空白を除去し、空文字と重複を取り除く(順序は維持)。"""
    seen: dict[str, None] = {}
    for package in packages:
        if not isinstance(package, str):
            continue
        name = package.strip()
        if name:
            seen.setdefault(name, None)
    return list(seen)


def detect_packages(files: Mapping[str, str]) -> list[str]:
    """ソースファイルのimport/require文から外部パッケージを検出する。

    Args:
        files: 相対パスから内容へのマッピング

    Returns:
        検出したパッケージ名(重複なし、検出順)
    """
    detected: dict[str, None] = {}
    for path, content in files.items():
        if not path.endswith(SOURCE_SUFFIXES):
            continue
        specifiers = IMPORT_PATTERN.findall(content) + REQUIRE_PATTERN.findall(content)
        for specifier in specifiers:
            if specifier.startswith((".", "/")) or specifier.startswith("node:"):
                continue
            parts = specifier.split("/")
            if specifier.startswith("@"):
                if len(parts) < 2:
                    continue
                name = f"{parts[0]}/{parts[1]}"
            else:
                name = parts[0]
            if name in NODE_BUILTINS:
                continue
            detected.setdefault(name, None)
    return list(detected)


class PackageInstaller:
    """サンドボックスへのnpmパッケージのインストールを行う。

    Attributes:
        _runner: npm実行に使うProcessRunner
        _supervisor: インストール後の再起動に使うProcessSupervisor
        _npm_command: npm実行ファイル
        _timeout: インストールのタイムアウト秒数
        _legacy_peer_deps: --legacy-peer-depsを付与するか
        _runtime_user: npmを実行するユーザー
    """

    def __init__(
        self,
        runner: ProcessRunner,
        supervisor: ProcessSupervisor,
        npm_command: str = "npm",
        timeout: float = 300.0,
        legacy_peer_deps: bool = True,
        runtime_user: str | None = None,
    ) -> None:
        self._runner = runner
        self._supervisor = supervisor
        self._npm_command = npm_command
        self._timeout = timeout
        self._legacy_peer_deps = legacy_peer_deps
        self._runtime_user = runtime_user

    def _install_command(self, packages: Sequence[str]) -> list[str]:
        command = [self._npm_command, "install"]
        if self._legacy_peer_deps:
            command.append("--legacy-peer-deps")
        return command + list(packages)

    async def install_base(self, directory: str | Path) -> None:
        """package.jsonに記載された依存関係をインストールする。

        Raises:
            PackageInstallFailure: npm installが失敗またはタイムアウトした場合
        """
        logger.info("Installing base dependencies in %s", directory)
        try:
            await self._runner.run(
                self._install_command([]),
                cwd=directory,
                timeout=self._timeout,
                user=self._runtime_user,
            )
        except ExecError as e:
            raise PackageInstallFailure([], stderr=e.stderr or e.message) from e

    async def install(
        self,
        directory: str | Path,
        packages: Iterable[str],
        port: int | None = None,
        pid: int | None = None,
    ) -> InstallResult:
        """パッケージをインストールし、成功時は開発サーバーを再起動する。

        不正なパッケージ名はnpmに渡さずfailedに含める。
        インストールが失敗した場合は全てfailedとし、プロセスは再起動しない。

        Args:
            directory: サンドボックスディレクトリ
            packages: インストールするパッケージ名
            port: 再起動時に使うポート(Noneの場合は再起動しない)
            pid: 再起動で終了させる現在のPID

        Returns:
            インストール結果(再起動した場合は新しいPIDを含む)

        Raises:
            ValueError: 有効なパッケージ名が1つも無い場合
        """
        requested = normalize_packages(packages)
        valid = [p for p in requested if PACKAGE_NAME_PATTERN.match(p)]
        invalid = [p for p in requested if p not in valid]

        if invalid:
            logger.warning("Rejected invalid package names: %s", invalid)
        if not valid:
            if invalid:
                return InstallResult(failed=invalid)
            raise ValueError("No packages specified")

        logger.info("Installing packages in %s: %s", directory, valid)
        try:
            result = await self._runner.run(
                self._install_command(valid),
                cwd=directory,
                timeout=self._timeout,
                user=self._runtime_user,
            )
        except ExecError as e:
            logger.error("Package installation failed: %s", e)
            return InstallResult(failed=valid + invalid, stderr=e.stderr)

        new_pid: int | None = None
        if port is not None:
            logger.info("Restarting dev server after package installation")
            new_pid = await self._supervisor.restart(directory, port, pid)

        return InstallResult(
            installed=valid,
            failed=invalid,
            pid=new_pid,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    async def install_detected(
        self,
        directory: str | Path,
        files: Mapping[str, str],
        port: int | None = None,
        pid: int | None = None,
    ) -> InstallResult:
        """ソースファイルから検出したパッケージをインストールする。"""
        packages = detect_packages(files)
        logger.info("Detected packages: %s", packages)
        if not packages:
            return InstallResult()
        return await self.install(directory, packages, port=port, pid=pid)
