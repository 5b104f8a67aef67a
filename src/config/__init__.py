"""
設定管理モジュール。

サンドボックスのパス・ポート・プロセス・プロキシ・Slackの設定を
環境変数から読み込み、型安全に提供する。
"""

from src.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
