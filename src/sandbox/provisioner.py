"""
サンドボックスプロビジョニングモジュール。

新規サンドボックスを以下の順で構築する:
1. ポート割り当て
2. ディレクトリ作成
3. 雛形ファイル配置
4. 依存パッケージのインストール
5. 開発サーバー起動
6. リバースプロキシ有効化
7. 準備完了待ち

完了した手順ごとに補償処理をRollbackLedgerに積み、
失敗時は呼び出し元(オーケストレーター)が逆順に巻き戻す。
"""

import asyncio
import logging
import random
import re
import shutil
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from pydantic import BaseModel

from src.sandbox.errors import ProvisioningFailure
from src.sandbox.filesystem import FileSystemGateway, resolve_within
from src.sandbox.health import HealthMonitor, RetryPolicy
from src.sandbox.installer import PackageInstaller
from src.sandbox.models import FileCacheEntry, SandboxRecord, SandboxStatus
from src.sandbox.ports import PortAllocator
from src.sandbox.proxy import ReverseProxyConfigurator
from src.sandbox.scaffold import SCAFFOLD_FILES
from src.sandbox.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_USER_NAME = "user"
USER_NAME_MAX_LENGTH = 32

UndoAction = Callable[[], Awaitable[object]]


def derive_user_name(requested: str | None, rng: random.Random | None = None) -> str:
    """DNS・ファイルシステムで安全なユーザー名を生成する。

    小文字化し、英数字とハイフン以外の連続をハイフンに置換した上で、
    0-99の乱数を末尾に付与する(例: "Alice" -> "alice42")。

    Args:
        requested: 要求されたユーザー名(省略時は"user")
        rng: 乱数生成器(テスト用)

    Returns:
        生成したユーザー名
    """
    base = re.sub(r"[^a-z0-9-]+", "-", (requested or "").lower())
    base = base.strip("-")[:USER_NAME_MAX_LENGTH].strip("-") or DEFAULT_USER_NAME
    suffix = (rng or random).randint(0, 99)
    return f"{base}{suffix}"


def generate_sandbox_id() -> str:
    """sandbox_{epoch-ms}形式のIDを生成する。"""
    return f"sandbox_{int(time.time() * 1000)}"


class RollbackLedger:
    """完了したプロビジョニング手順の補償処理を記録する。"""

    def __init__(self) -> None:
        self._entries: list[tuple[str, UndoAction]] = []

    @property
    def stages(self) -> list[str]:
        """補償処理が記録された手順名(記録順)。"""
        return [stage for stage, _ in self._entries]

    def push(self, stage: str, undo: UndoAction) -> None:
        self._entries.append((stage, undo))

    async def unwind(self) -> None:
        """記録と逆順に補償処理を実行する。

        各処理はベストエフォートで、失敗してもログを残して続行する。
        """
        while self._entries:
            stage, undo = self._entries.pop()
            logger.info("Rolling back stage: %s", stage)
            try:
                await undo()
            except Exception as e:
                logger.warning("Rollback of stage %s failed: %s", stage, e)


class ProvisionResult(BaseModel):
    """プロビジョニング結果。"""

    record: SandboxRecord
    tracked_files: set[str]
    file_cache: dict[str, FileCacheEntry]


class SandboxProvisioner:
    """各コンポーネントを組み合わせてサンドボックスを構築する。"""

    def __init__(
        self,
        port_allocator: PortAllocator,
        supervisor: ProcessSupervisor,
        proxy: ReverseProxyConfigurator,
        health: HealthMonitor,
        installer: PackageInstaller,
        sandbox_root: str | Path,
        base_domain: str,
        retry_policy: RetryPolicy,
        url_scheme: str = "https",
        public_host: str = "127.0.0.1",
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        self._port_allocator = port_allocator
        self._supervisor = supervisor
        self._proxy = proxy
        self._health = health
        self._installer = installer
        self._sandbox_root = Path(sandbox_root)
        self._base_domain = base_domain
        self._retry_policy = retry_policy
        self._url_scheme = url_scheme
        self._public_host = public_host
        self._owner = owner
        self._group = group

    async def _stage(self, stage: str, sandbox_id: str, awaitable: Awaitable) -> object:
        logger.info("[%s] Stage started: %s", sandbox_id, stage)
        try:
            result = await awaitable
        except Exception as e:
            logger.error("[%s] Stage %s failed: %s", sandbox_id, stage, e)
            raise ProvisioningFailure(stage, cause=e, sandbox_id=sandbox_id) from e
        logger.debug("[%s] Stage completed: %s", sandbox_id, stage)
        return result

    async def provision(self, user_name: str, ledger: RollbackLedger) -> ProvisionResult:
        """サンドボックスを構築して稼働状態にする。

        Args:
            user_name: 安全化済みのユーザー名
            ledger: 補償処理を記録するRollbackLedger

        Returns:
            status=RUNNINGのレコードと、雛形ファイルの追跡情報

        Raises:
            ResourceExhausted: 空きポートが無い場合(何も作成していない)
            ProvisioningFailure: いずれかの手順が失敗した場合(stageに手順名)
        """
        sandbox_id = generate_sandbox_id()

        # 何も作成していないため巻き戻し不要
        port = await self._port_allocator.allocate()

        directory = resolve_within(self._sandbox_root, user_name)
        subdomain = f"{user_name}.{self._base_domain}"
        record = SandboxRecord(
            sandbox_id=sandbox_id,
            user_name=user_name,
            port=port,
            directory=str(directory),
            subdomain=subdomain,
            url=f"{self._url_scheme}://{subdomain}",
            fallback_url=f"http://{self._public_host}:{port}",
            status=SandboxStatus.CREATING,
            created_at=time.time(),
        )
        logger.info(
            "Provisioning sandbox %s for %s on port %d at %s",
            sandbox_id,
            user_name,
            port,
            directory,
        )

        tracked_files: set[str] = set()
        file_cache: dict[str, FileCacheEntry] = {}
        gateway = FileSystemGateway(
            directory, tracked_files, file_cache, owner=self._owner, group=self._group
        )

        created = await self._stage("create_directory", sandbox_id, gateway.prepare())
        if created:
            ledger.push(
                "create_directory",
                lambda: asyncio.to_thread(shutil.rmtree, directory, ignore_errors=True),
            )

        await self._stage("scaffold", sandbox_id, self._scaffold(gateway))
        await self._stage(
            "install_dependencies", sandbox_id, self._installer.install_base(directory)
        )

        pid = await self._stage("spawn", sandbox_id, self._supervisor.spawn(directory, port))
        ledger.push("spawn", lambda: self._supervisor.kill(pid))
        record.pid = pid

        # リロード失敗時も設定ファイルを削除対象とする
        ledger.push("activate_proxy", lambda: self._proxy.deactivate(user_name))
        await self._stage(
            "activate_proxy", sandbox_id, self._proxy.activate(user_name, port, subdomain)
        )

        await self._stage(
            "wait_ready", sandbox_id, self._health.wait_for_ready(port, self._retry_policy)
        )

        record.status = SandboxStatus.RUNNING
        logger.info("Sandbox %s is running at %s", sandbox_id, record.url)
        return ProvisionResult(record=record, tracked_files=tracked_files, file_cache=file_cache)

    async def _scaffold(self, gateway: FileSystemGateway) -> None:
        for relative_path, content in SCAFFOLD_FILES.items():
            await gateway.write(relative_path, content)

