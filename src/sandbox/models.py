"""
サンドボックス関連の型定義モジュール。

ライフサイクル管理で扱う型をPydanticモデルとして実装する:
- SandboxStatus: サンドボックスの状態を表すEnum
- SandboxRecord: アクティブなサンドボックスの情報
- FileCacheEntry: ファイルキャッシュのエントリ
- CommandResult / InstallResult: 外部コマンドの結果
- KillResult / StatusReport / RestartResult: ライフサイクル操作の応答
"""

from enum import Enum

from pydantic import BaseModel, Field


class SandboxStatus(Enum):
    """サンドボックスの状態を表すEnum。

    - CREATING: プロビジョニング中
    - RUNNING: 開発サーバー稼働中
    - STOPPED: 停止済み(kill済み、またはプロセス消失を観測)
    - ERROR: プロビジョニング失敗
    """

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class SandboxRecord(BaseModel):
    """アクティブなサンドボックスの情報。

    Attributes:
        sandbox_id: sandbox_{epoch-ms}形式のID
        user_name: ディレクトリ名・サブドメイン・プロキシ設定名に使う識別子
        port: 開発サーバーのポート
        directory: sandbox_root/user_name の絶対パス
        subdomain: {user_name}.{base_domain}
        url: 公開URL
        fallback_url: http://{host}:{port} 形式の直接アクセスURL
        pid: 開発サーバーのPID(未起動の場合はNone)
        status: 現在の状態
        created_at: 作成時のUnixタイムスタンプ
    """

    sandbox_id: str
    user_name: str = Field(..., pattern=r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
    port: int = Field(..., ge=1, le=65535)
    directory: str
    subdomain: str
    url: str
    fallback_url: str
    pid: int | None = None
    status: SandboxStatus = SandboxStatus.CREATING
    created_at: float


class FileCacheEntry(BaseModel):
    """ファイルキャッシュのエントリ。"""

    content: str
    last_modified_at: float


class CommandResult(BaseModel):
    """外部コマンドの実行結果。"""

    command: list[str]
    cwd: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """終了コードが0かどうかを返す。"""
        return self.exit_code == 0


class InstallResult(BaseModel):
    """パッケージインストールの結果。

    Attributes:
        installed: インストールに成功したパッケージ
        failed: インストールに失敗した(または不正な)パッケージ
        pid: 再起動後の開発サーバーのPID(再起動しなかった場合はNone)
        stdout: npmの標準出力
        stderr: npmの標準エラー出力
    """

    installed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    pid: int | None = None
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        """失敗したパッケージが無いかどうかを返す。"""
        return not self.failed


class KillResult(BaseModel):
    """kill操作の応答。"""

    killed: bool


class StatusReport(BaseModel):
    """status操作の応答。

    Attributes:
        active: レジストリにサンドボックスが存在するか
        healthy: 開発サーバープロセスが生存しているか
        record: 観測した状態を反映したレコードのコピー
        files_tracked: 追跡中のファイル一覧
        last_health_check: ヘルスチェック実施時刻(Unixタイムスタンプ)
    """

    active: bool
    healthy: bool
    record: SandboxRecord | None = None
    files_tracked: list[str] = Field(default_factory=list)
    last_health_check: float | None = None


class RestartResult(BaseModel):
    """restart操作の応答。"""

    sandbox_id: str
    pid: int


class SandboxSnapshot(BaseModel):
    """サンドボックスのソースファイルとディレクトリ構造のスナップショット。

    Attributes:
        files: 相対パスからファイル内容へのマップ
        structure: ディレクトリ構造のテキスト表現
    """

    files: dict[str, str] = Field(default_factory=dict)
    structure: str = ""
