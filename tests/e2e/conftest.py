"""
E2Eテスト用の共有フィクスチャ。

LifecycleOrchestratorを実コンポーネントで組み立てる。
ファイルシステムは一時ディレクトリ、開発サーバーはsleepプロセスを使い、
npm・nginx・ポート確認・HTTP接続のみテストダブルに置き換える。
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest
from src.sandbox.health import HealthMonitor, RetryPolicy
from src.sandbox.installer import PackageInstaller
from src.sandbox.orchestrator import LifecycleOrchestrator
from src.sandbox.ports import PortAllocator
from src.sandbox.provisioner import SandboxProvisioner
from src.sandbox.proxy import ReverseProxyConfigurator
from src.sandbox.supervisor import ProcessSupervisor


@pytest.fixture
def sandbox_root(tmp_path: Path) -> Path:
    return tmp_path / "sandboxes"


@pytest.fixture
def nginx_dirs(tmp_path: Path) -> tuple[Path, Path]:
    """(sites-available, sites-enabled) の一時ディレクトリ。"""
    return tmp_path / "sites-available", tmp_path / "sites-enabled"


@pytest.fixture
def proxy(fake_controller, nginx_dirs) -> ReverseProxyConfigurator:
    available_dir, enabled_dir = nginx_dirs
    return ReverseProxyConfigurator(
        fake_controller,
        available_dir=available_dir,
        enabled_dir=enabled_dir,
        ssl_certificate="/etc/letsencrypt/live/example.com/fullchain.pem",
        ssl_certificate_key="/etc/letsencrypt/live/example.com/privkey.pem",
    )


@pytest.fixture
def http_client(ready_client) -> httpx.AsyncClient:
    """準備完了確認に使うクライアント(既定では即時に200を返す)。"""
    return ready_client


@pytest.fixture
def orchestrator(
    fake_runner,
    fake_probe,
    supervisor: ProcessSupervisor,
    proxy: ReverseProxyConfigurator,
    http_client: httpx.AsyncClient,
    sandbox_root: Path,
) -> LifecycleOrchestrator:
    """実コンポーネントで組み立てたLifecycleOrchestratorを提供。"""
    health = HealthMonitor(supervisor, client=http_client)
    installer = PackageInstaller(fake_runner, supervisor)
    provisioner = SandboxProvisioner(
        port_allocator=PortAllocator(fake_probe, start_port=3000, window=100),
        supervisor=supervisor,
        proxy=proxy,
        health=health,
        installer=installer,
        sandbox_root=sandbox_root,
        base_domain="ai.maninfini.com",
        retry_policy=RetryPolicy(max_attempts=3, interval=0.01, timeout=5.0),
    )
    return LifecycleOrchestrator(
        provisioner=provisioner,
        supervisor=supervisor,
        proxy=proxy,
        health=health,
        installer=installer,
    )


@pytest.fixture
async def running(orchestrator: LifecycleOrchestrator) -> AsyncGenerator[LifecycleOrchestrator, None]:
    """aliceのサンドボックスが稼働中のオーケストレーターを提供。"""
    await orchestrator.create("alice")
    yield orchestrator
    await orchestrator.kill()
