"""
設定管理モジュール。

pydantic-settings を使用して環境変数を型安全に管理する。
os.environ の直接参照は禁止し、このモジュール経由で取得する。
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """アプリケーション設定。

    環境変数から設定を読み込み、型安全に管理する。
    形式が不正な場合は ValidationError を発生させる。
    ホスト上のパスやコマンドは全てデフォルト値を持つため、
    環境変数が一切無くても構築できる。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # サンドボックス配置
    sandbox_root: str = Field(
        default="/var/www/manimaker/sandboxes",
        description="Parent directory of every sandbox directory",
    )
    base_domain: str = Field(
        default="ai.maninfini.com",
        pattern=r"^[a-z0-9.-]+$",
        description="Base domain used to derive sandbox subdomains",
    )
    url_scheme: str = Field(
        default="https",
        pattern=r"^https?$",
        description="Scheme of the public sandbox URL",
    )
    public_host: str = Field(
        default="127.0.0.1",
        description="Host used for the host:port fallback URL",
    )
    runtime_user: str | None = Field(
        default=None,
        description="User owning sandbox files and running the dev server",
    )
    runtime_group: str | None = Field(
        default=None,
        description="Group owning sandbox files",
    )

    # ポート割り当て
    default_port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        description="First candidate port for the dev server",
    )
    port_scan_window: int = Field(
        default=100,
        ge=1,
        description="Number of candidate ports scanned from default_port",
    )
    port_probe_timeout: float = Field(
        default=0.5,
        gt=0,
        description="Timeout of a single port probe in seconds",
    )

    # プロセス
    dev_command: list[str] = Field(
        default=["npm", "run", "dev", "--", "--port", "{port}", "--host", "0.0.0.0"],
        min_length=1,
        description="Dev server argv; {port} is substituted",
    )
    npm_command: str = Field(
        default="npm",
        description="Package manager executable",
    )
    npm_legacy_peer_deps: bool = Field(
        default=True,
        description="Pass --legacy-peer-deps to npm install",
    )
    install_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Dependency installation timeout in seconds",
    )
    command_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout of arbitrary sandbox commands in seconds",
    )
    kill_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Time to wait for a killed process to be reaped",
    )

    # ヘルスチェック
    health_max_attempts: int = Field(default=30, ge=1)
    health_interval: float = Field(default=1.0, ge=0)
    health_backoff: float = Field(default=1.0, ge=1.0)
    health_timeout: float = Field(default=60.0, gt=0)

    # リバースプロキシ(nginx)
    nginx_available_dir: str = Field(default="/etc/nginx/sites-available")
    nginx_enabled_dir: str = Field(default="/etc/nginx/sites-enabled")
    nginx_validate_command: list[str] = Field(
        default=["sudo", "nginx", "-t"],
        min_length=1,
    )
    nginx_reload_command: list[str] = Field(
        default=["sudo", "systemctl", "reload", "nginx"],
        min_length=1,
    )
    proxy_timeout: float = Field(default=30.0, gt=0)
    ssl_certificate: str = Field(
        default="/etc/letsencrypt/live/maninfini.com/fullchain.pem",
    )
    ssl_certificate_key: str = Field(
        default="/etc/letsencrypt/live/maninfini.com/privkey.pem",
    )

    # Slackコマンド(任意)
    slack_bot_token: str | None = Field(
        default=None,
        pattern=r"^xoxb-.+$",
        description="Slack Bot token (must start with xoxb-)",
    )
    slack_app_token: str | None = Field(
        default=None,
        pattern=r"^xapp-.+$",
        description="Slack App token (must start with xapp-)",
    )


@lru_cache
def get_settings() -> Settings:
    """Settingsインスタンスをキャッシュして返す。

    アプリケーション全体で同一のSettingsインスタンスを共有するために使用する。

    Returns:
        Settings: キャッシュされた設定インスタンス
    """
    return Settings()
