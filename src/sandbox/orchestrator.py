"""
ライフサイクルオーケストレーターモジュール。

サンドボックス管理の公開エントリーポイント:
- create: 既存サンドボックスを破棄してから新規作成
- kill: アクティブなサンドボックスを破棄(常に成功)
- status: 生存確認を行い状態を返す(レジストリは変更しない)
- restart: 同じポート・ディレクトリで開発サーバーを再起動
- install_packages / ファイル操作 / get_files / run_command: アクティブなサンドボックスへの操作

全ての操作は1つのasyncio.Lockで直列化し、
同時リクエストは副作用を交錯させずに順番待ちさせる。
"""

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping, Sequence

from src.config.settings import Settings
from src.sandbox.errors import SandboxError, SandboxNotActive
from src.sandbox.filesystem import FileSystemGateway
from src.sandbox.health import HealthMonitor, RetryPolicy
from src.sandbox.installer import PackageInstaller
from src.sandbox.models import (
    CommandResult,
    InstallResult,
    KillResult,
    RestartResult,
    SandboxRecord,
    SandboxStatus,
    SandboxSnapshot,
    StatusReport,
)
from src.sandbox.ports import PortAllocator, TcpPortProbe
from src.sandbox.provisioner import RollbackLedger, SandboxProvisioner, derive_user_name
from src.sandbox.proxy import NginxController, ReverseProxyConfigurator
from src.sandbox.registry import SandboxRegistry
from src.sandbox.runner import AsyncProcessRunner
from src.sandbox.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class LifecycleOrchestrator:
    """サンドボックスのライフサイクルを管理する。

    レジストリはこのインスタンスが所有し、変更は全てロック内で行う。
    インスタンスごとに独立した状態を持つため、テストでは個別に生成できる。

    Attributes:
        registry: アクティブなサンドボックスの状態
        _provisioner: 新規サンドボックスの構築
        _supervisor: 開発サーバープロセスの管理
        _proxy: リバースプロキシ設定の管理
        _health: 生存確認
        _installer: パッケージインストール
        _lock: 全操作を直列化するロック
    """

    def __init__(
        self,
        provisioner: SandboxProvisioner,
        supervisor: ProcessSupervisor,
        proxy: ReverseProxyConfigurator,
        health: HealthMonitor,
        installer: PackageInstaller,
        registry: SandboxRegistry | None = None,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        self.registry = registry or SandboxRegistry()
        self._provisioner = provisioner
        self._supervisor = supervisor
        self._proxy = proxy
        self._health = health
        self._installer = installer
        self._owner = owner
        self._group = group
        self._lock = asyncio.Lock()

        logger.info("LifecycleOrchestrator initialized")

    @classmethod
    def from_settings(cls, settings: Settings) -> "LifecycleOrchestrator":
        """設定から実OS向けのコンポーネントを組み立てる。"""
        runner = AsyncProcessRunner()
        supervisor = ProcessSupervisor(
            runner,
            dev_command=settings.dev_command,
            runtime_user=settings.runtime_user,
            command_timeout=settings.command_timeout,
            kill_grace_seconds=settings.kill_grace_seconds,
        )
        proxy = ReverseProxyConfigurator(
            NginxController(
                runner,
                validate_command=settings.nginx_validate_command,
                reload_command=settings.nginx_reload_command,
                timeout=settings.proxy_timeout,
            ),
            available_dir=settings.nginx_available_dir,
            enabled_dir=settings.nginx_enabled_dir,
            ssl_certificate=settings.ssl_certificate,
            ssl_certificate_key=settings.ssl_certificate_key,
        )
        health = HealthMonitor(supervisor)
        installer = PackageInstaller(
            runner,
            supervisor,
            npm_command=settings.npm_command,
            timeout=settings.install_timeout,
            legacy_peer_deps=settings.npm_legacy_peer_deps,
            runtime_user=settings.runtime_user,
        )
        provisioner = SandboxProvisioner(
            port_allocator=PortAllocator(
                TcpPortProbe(timeout=settings.port_probe_timeout),
                start_port=settings.default_port,
                window=settings.port_scan_window,
            ),
            supervisor=supervisor,
            proxy=proxy,
            health=health,
            installer=installer,
            sandbox_root=settings.sandbox_root,
            base_domain=settings.base_domain,
            retry_policy=RetryPolicy(
                max_attempts=settings.health_max_attempts,
                interval=settings.health_interval,
                backoff=settings.health_backoff,
                timeout=settings.health_timeout,
            ),
            url_scheme=settings.url_scheme,
            public_host=settings.public_host,
            owner=settings.runtime_user,
            group=settings.runtime_group,
        )
        return cls(
            provisioner=provisioner,
            supervisor=supervisor,
            proxy=proxy,
            health=health,
            installer=installer,
            owner=settings.runtime_user,
            group=settings.runtime_group,
        )

    def _require_active(self, sandbox_id: str | None = None) -> SandboxRecord:
        record = self.registry.record
        if record is None or not self.registry.matches(sandbox_id):
            raise SandboxNotActive("No active sandbox", sandbox_id=sandbox_id)
        return record

    def _gateway(self, record: SandboxRecord) -> FileSystemGateway:
        return FileSystemGateway(
            record.directory,
            self.registry.tracked_files,
            self.registry.file_cache,
            owner=self._owner,
            group=self._group,
        )

    async def _teardown(self) -> bool:
        """アクティブなサンドボックスを破棄する。ロック内から呼び出すこと。

        プロセス終了とプロキシ削除はベストエフォートで、失敗はログのみ。

        Returns:
            破棄したレコードが存在した場合True
        """
        record = self.registry.record
        if record is None:
            return False

        logger.info("Tearing down sandbox %s (%s)", record.sandbox_id, record.user_name)

        if record.pid is not None:
            try:
                await self._supervisor.kill(record.pid)
            except SandboxError as e:
                logger.warning("Failed to kill process %d: %s", record.pid, e)

        await self._proxy.deactivate(record.user_name)

        record.status = SandboxStatus.STOPPED
        self.registry.clear()
        logger.info("Sandbox %s torn down", record.sandbox_id)
        return True

    async def create(self, user_name: str | None = None) -> SandboxRecord:
        """サンドボックスを作成する。

        既存のサンドボックスは状態に関わらず先に破棄する。
        構築に失敗した場合は完了済みの手順を逆順に巻き戻し、
        レジストリは空のままとなる。

        Args:
            user_name: 要求するユーザー名(省略時は"user")

        Returns:
            作成したサンドボックスのレコード

        Raises:
            ResourceExhausted: 空きポートが無い場合
            ProvisioningFailure: 構築のいずれかの手順が失敗した場合
        """
        async with self._lock:
            await self._teardown()

            name = derive_user_name(user_name)
            ledger = RollbackLedger()
            logger.info("Creating sandbox for %s", name)

            try:
                result = await self._provisioner.provision(name, ledger)
            except Exception as e:
                logger.error("Sandbox creation for %s failed: %s", name, e)
                await ledger.unwind()
                raise

            self.registry.commit(result.record, result.tracked_files, result.file_cache)
            return result.record.model_copy()

    async def kill(self, sandbox_id: str | None = None) -> KillResult:
        """サンドボックスを破棄する。

        アクティブなサンドボックスが無い、またはIDが一致しない場合は何もしない。
        内部エラーは呼び出し元に伝播しない。
        """
        async with self._lock:
            if not self.registry.matches(sandbox_id):
                if self.registry.is_active:
                    logger.warning("Kill requested for unknown sandbox: %s", sandbox_id)
                return KillResult(killed=False)
            return KillResult(killed=await self._teardown())

    async def status(self, sandbox_id: str | None = None) -> StatusReport:
        """サンドボックスの状態を返す。

        プロセスの生存確認のみ行い、レジストリは変更しない。
        プロセスが消失している場合、返すレコードのstatusはSTOPPEDとなる。
        """
        async with self._lock:
            record = self.registry.record
            if record is None or not self.registry.matches(sandbox_id):
                return StatusReport(active=False, healthy=False)

            healthy = self._health.probe_process(record.pid)
            observed = record.model_copy()
            if not healthy and observed.status == SandboxStatus.RUNNING:
                observed.status = SandboxStatus.STOPPED

            return StatusReport(
                active=True,
                healthy=healthy,
                record=observed,
                files_tracked=sorted(self.registry.tracked_files),
                last_health_check=time.time(),
            )

    async def restart(self, sandbox_id: str | None = None) -> RestartResult:
        """開発サーバーを再起動する(ポートとディレクトリは維持)。

        Raises:
            SandboxNotActive: アクティブなサンドボックスが無い場合
            ProcessSpawnFailure: 新しいプロセスの起動に失敗した場合
        """
        async with self._lock:
            record = self._require_active(sandbox_id)
            logger.info("Restarting sandbox %s", record.sandbox_id)

            try:
                new_pid = await self._supervisor.restart(record.directory, record.port, record.pid)
            except SandboxError:
                self._mark_failed(record)
                raise

            record.pid = new_pid
            record.status = SandboxStatus.RUNNING
            return RestartResult(sandbox_id=record.sandbox_id, pid=new_pid)

    async def install_packages(
        self, packages: Iterable[str], sandbox_id: str | None = None
    ) -> InstallResult:
        """パッケージをインストールし、成功時は開発サーバーを再起動する。

        Raises:
            SandboxNotActive: アクティブなサンドボックスが無い場合
            ProcessSpawnFailure: インストール後の再起動に失敗した場合
        """
        async with self._lock:
            record = self._require_active(sandbox_id)
            try:
                result = await self._installer.install(
                    record.directory, packages, port=record.port, pid=record.pid
                )
            except SandboxError:
                self._mark_failed(record)
                raise
            self._apply_restart(record, result)
            return result

    async def install_detected(self, files: Mapping[str, str]) -> InstallResult:
        """ソースファイルのimport文から検出したパッケージをインストールする。"""
        async with self._lock:
            record = self._require_active()
            try:
                result = await self._installer.install_detected(
                    record.directory, files, port=record.port, pid=record.pid
                )
            except SandboxError:
                self._mark_failed(record)
                raise
            self._apply_restart(record, result)
            return result

    def _apply_restart(self, record: SandboxRecord, result: InstallResult) -> None:
        if result.pid is not None:
            record.pid = result.pid
            record.status = SandboxStatus.RUNNING

    def _mark_failed(self, record: SandboxRecord) -> None:
        # 再起動途中の失敗では旧プロセスも停止済み
        logger.error("Dev server for sandbox %s is not running", record.sandbox_id)
        record.pid = None
        record.status = SandboxStatus.ERROR

    async def write_file(self, path: str, content: str) -> str:
        """アクティブなサンドボックスにファイルを書き込む。"""
        async with self._lock:
            return await self._gateway(self._require_active()).write(path, content)

    async def read_file(self, path: str) -> str:
        """アクティブなサンドボックスのファイルを読み込む。"""
        async with self._lock:
            return await self._gateway(self._require_active()).read(path)

    async def delete_file(self, path: str) -> str:
        """アクティブなサンドボックスのファイルを削除する。"""
        async with self._lock:
            return await self._gateway(self._require_active()).delete(path)

    async def list_files(self) -> list[str]:
        """アクティブなサンドボックスのファイル一覧を返す。"""
        async with self._lock:
            return await self._gateway(self._require_active()).list()

    async def get_files(self) -> SandboxSnapshot:
        """アクティブなサンドボックスのソースファイルと構造を返す。"""
        async with self._lock:
            return await self._gateway(self._require_active()).snapshot()

    async def run_command(
        self,
        command: str | Sequence[str],
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """アクティブなサンドボックスのディレクトリでコマンドを実行する。"""
        async with self._lock:
            record = self._require_active()
            return await self._supervisor.run_command(
                record.directory, command, cwd=cwd, timeout=timeout
            )
