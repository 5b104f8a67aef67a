"""
サンドボックス管理モジュール。

ローカルホスト上のReact開発サーバーの作成・破棄・監視と、
リバースプロキシ経由での公開を担当する。
"""

from src.sandbox.errors import (
    CommandTimeout,
    ConfigValidationFailure,
    ExecError,
    FileNotFound,
    HealthCheckTimeout,
    InvalidUserName,
    PackageInstallFailure,
    PathTraversal,
    ProcessSpawnFailure,
    ProvisioningFailure,
    ResourceExhausted,
    SandboxError,
    SandboxNotActive,
)
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
from src.sandbox.orchestrator import LifecycleOrchestrator

__all__ = [
    "CommandResult",
    "CommandTimeout",
    "ConfigValidationFailure",
    "ExecError",
    "FileNotFound",
    "HealthCheckTimeout",
    "InstallResult",
    "InvalidUserName",
    "KillResult",
    "LifecycleOrchestrator",
    "PackageInstallFailure",
    "PathTraversal",
    "ProcessSpawnFailure",
    "ProvisioningFailure",
    "ResourceExhausted",
    "RestartResult",
    "SandboxError",
    "SandboxNotActive",
    "SandboxRecord",
    "SandboxSnapshot",
    "SandboxStatus",
    "StatusReport",
]
