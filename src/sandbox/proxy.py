"""
リバースプロキシ設定モジュール。

サンドボックスごとのnginxサーバーブロックを生成し、有効化・検証・リロードする。

有効化はトランザクションとして扱う:
1. ステージングファイルに書き込み、アトミックに配置
2. シンボリックリンクをアトミックに差し替えて有効化
3. nginx全体の設定を構文検証
4. 検証に失敗した場合は直前の状態に戻してConfigValidationFailureをraise
5. 成功した場合のみリロード

nginxはリロードするまで設定を読み直さないため、
検証に失敗しても稼働中のルートはそのまま維持される。
ただし「nginx -t」は有効化済みの設定を検証するため、2から4の間に
外部からリロードされると未検証の設定が読み込まれる。
"""

import asyncio
import logging
import os
import re
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

import jinja2

from src.sandbox.errors import ConfigValidationFailure, ExecError, InvalidUserName, SandboxError
from src.sandbox.runner import ProcessRunner

logger = logging.getLogger(__name__)

USER_NAME_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
SUBDOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)+$"
)
# nginxの構文上意味を持つ文字
UNSAFE_VALUE_PATTERN = re.compile(r"[\s;{}'\"\\$#]")

NGINX_SERVER_TEMPLATE = """\
# Server block for sandbox subdomain: {{ subdomain }}
server {
    listen 80;
    listen [::]:80;
    server_name {{ subdomain }};
    return 301 https://$server_name$request_uri;
}

server {
    listen 443 ssl http2;
    listen [::]:443 ssl http2;
    server_name {{ subdomain }};

    ssl_certificate {{ ssl_certificate }};
    ssl_certificate_key {{ ssl_certificate_key }};
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_ciphers HIGH:!aNULL:!MD5;
    ssl_prefer_server_ciphers on;

    add_header X-Frame-Options "SAMEORIGIN" always;
    add_header X-Content-Type-Options "nosniff" always;
    add_header Referrer-Policy "no-referrer-when-downgrade" always;

    location / {
        proxy_pass http://localhost:{{ port }}/;
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;

        # Vite HMR WebSocket
        proxy_set_header Origin http://localhost:{{ port }};
        proxy_buffering off;
        proxy_read_timeout 86400;
        proxy_send_timeout 86400;
    }
}
"""


def _nginx_literal(value: Any) -> Any:
    """テンプレートに埋め込む値がnginxの構文を壊さないことを保証する。"""
    if isinstance(value, bool):
        raise InvalidUserName(f"Unsupported template value: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value)
    if not text or UNSAFE_VALUE_PATTERN.search(text):
        raise InvalidUserName(f"Unsafe value for proxy configuration: {text!r}")
    return text


_environment = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    finalize=_nginx_literal,
    keep_trailing_newline=True,
    autoescape=False,
)


class ProxyController(Protocol):
    """プロキシ本体の制御のプロトコル定義。"""

    async def validate(self) -> None:
        """設定全体を構文検証する。

        Raises:
            ConfigValidationFailure: 検証に失敗した場合
        """
        ...

    async def reload(self) -> None:
        """設定をリロードする。

        Raises:
            ExecError: リロードに失敗した場合
        """
        ...


class NginxController:
    """nginx -t とsystemctl reloadによるProxyController実装。"""

    def __init__(
        self,
        runner: ProcessRunner,
        validate_command: Sequence[str],
        reload_command: Sequence[str],
        timeout: float = 30.0,
    ) -> None:
        self._runner = runner
        self._validate_command = list(validate_command)
        self._reload_command = list(reload_command)
        self._timeout = timeout

    async def validate(self) -> None:
        try:
            await self._runner.run(self._validate_command, timeout=self._timeout)
        except ExecError as e:
            raise ConfigValidationFailure(
                f"Proxy configuration is invalid: {e.stderr or e}", output=e.stderr
            ) from e

    async def reload(self) -> None:
        await self._runner.run(self._reload_command, timeout=self._timeout)


class ReverseProxyConfigurator:
    """サンドボックスごとのプロキシルートを管理する。

    Attributes:
        _controller: プロキシ本体の制御
        _available_dir: 設定ファイルの配置先(sites-available)
        _enabled_dir: 有効な設定のリンク配置先(sites-enabled)
        _ssl_certificate: ワイルドカード証明書のパス
        _ssl_certificate_key: ワイルドカード証明書の秘密鍵のパス
    """

    def __init__(
        self,
        controller: ProxyController,
        available_dir: str | Path,
        enabled_dir: str | Path,
        ssl_certificate: str,
        ssl_certificate_key: str,
    ) -> None:
        self._controller = controller
        self._available_dir = Path(available_dir)
        self._enabled_dir = Path(enabled_dir)
        self._ssl_certificate = ssl_certificate
        self._ssl_certificate_key = ssl_certificate_key

    def config_path(self, user_name: str) -> Path:
        return self._available_dir / f"{user_name}.conf"

    def link_path(self, user_name: str) -> Path:
        return self._enabled_dir / f"{user_name}.conf"

    def render(self, user_name: str, port: int, subdomain: str) -> str:
        """サーバーブロックを生成する。

        Raises:
            InvalidUserName: user_nameやsubdomainが安全でない場合
        """
        if not USER_NAME_PATTERN.match(user_name):
            raise InvalidUserName(f"Invalid user name for proxy configuration: {user_name!r}")
        if not SUBDOMAIN_PATTERN.match(subdomain):
            raise InvalidUserName(f"Invalid subdomain: {subdomain!r}")
        if not 1 <= port <= 65535:
            raise ValueError(f"Invalid port: {port}")

        template = _environment.from_string(NGINX_SERVER_TEMPLATE)
        return template.render(
            subdomain=subdomain,
            port=port,
            ssl_certificate=self._ssl_certificate,
            ssl_certificate_key=self._ssl_certificate_key,
        )

    def _install_sync(self, user_name: str, rendered: str) -> tuple[str | None, bool]:
        config_path = self.config_path(user_name)
        link_path = self.link_path(user_name)
        previous_content = config_path.read_text() if config_path.is_file() else None
        previous_link = link_path.is_symlink() or link_path.exists()

        self._available_dir.mkdir(parents=True, exist_ok=True)
        self._enabled_dir.mkdir(parents=True, exist_ok=True)

        staging = self._available_dir / f".{user_name}.conf.staging"
        staging.write_text(rendered)
        os.replace(staging, config_path)

        staging_link = self._enabled_dir / f".{user_name}.conf.staging"
        staging_link.unlink(missing_ok=True)
        os.symlink(config_path, staging_link)
        os.replace(staging_link, link_path)

        return previous_content, previous_link

    def _restore_sync(
        self, user_name: str, previous_content: str | None, previous_link: bool
    ) -> None:
        config_path = self.config_path(user_name)
        link_path = self.link_path(user_name)
        if previous_content is None:
            config_path.unlink(missing_ok=True)
        else:
            config_path.write_text(previous_content)
        if not previous_link:
            link_path.unlink(missing_ok=True)

    def _remove_sync(self, user_name: str) -> None:
        self.link_path(user_name).unlink(missing_ok=True)
        self.config_path(user_name).unlink(missing_ok=True)

    async def activate(self, user_name: str, port: int, subdomain: str) -> None:
        """ルートを生成・有効化・検証し、プロキシをリロードする。

        Args:
            user_name: 設定ファイル名に使う識別子
            port: 転送先ポート
            subdomain: server_name

        Raises:
            InvalidUserName: 識別子が安全でない場合
            ConfigValidationFailure: 検証に失敗した場合(設定は元に戻される)
            ExecError: リロードに失敗した場合
        """
        rendered = self.render(user_name, port, subdomain)
        logger.info("Activating proxy route %s -> localhost:%d", subdomain, port)

        previous_content, previous_link = await asyncio.to_thread(
            self._install_sync, user_name, rendered
        )

        try:
            await self._controller.validate()
        except ConfigValidationFailure:
            logger.error("Proxy configuration for %s rejected, restoring previous state", user_name)
            await asyncio.to_thread(
                self._restore_sync, user_name, previous_content, previous_link
            )
            raise

        await self._controller.reload()
        logger.info("Proxy route active: %s", subdomain)

    async def deactivate(self, user_name: str) -> bool:
        """ルートを削除してプロキシをリロードする(ベストエフォート)。

        失敗はログに記録するのみで、呼び出し元には伝播しない。

        Returns:
            全ての手順が成功した場合True
        """
        logger.info("Removing proxy route for %s", user_name)
        try:
            await asyncio.to_thread(self._remove_sync, user_name)
            await self._controller.validate()
            await self._controller.reload()
        except (SandboxError, OSError) as e:
            logger.warning("Failed to remove proxy route for %s: %s", user_name, e)
            return False
        return True
