"""
サンドボックスレジストリモジュール。

アクティブなサンドボックス(最大1つ)のレコード、追跡ファイル集合、
ファイルキャッシュを保持する。オーケストレーターが所有し、
変更はオーケストレーターのロック内でのみ行う。
"""

import logging
from collections.abc import Iterable, Mapping

from src.sandbox.models import FileCacheEntry, SandboxRecord

logger = logging.getLogger(__name__)


class SandboxRegistry:
    """アクティブなサンドボックスの状態を保持する。

    Attributes:
        record: アクティブなサンドボックスのレコード(無い場合はNone)
        tracked_files: サンドボックス内に存在が分かっている相対パスの集合
        file_cache: 相対パスからキャッシュエントリへのマッピング
    """

    def __init__(self) -> None:
        self.record: SandboxRecord | None = None
        self.tracked_files: set[str] = set()
        self.file_cache: dict[str, FileCacheEntry] = {}

    @property
    def is_active(self) -> bool:
        return self.record is not None

    def matches(self, sandbox_id: str | None) -> bool:
        """sandbox_idがアクティブなレコードを指すかを返す。Noneは常に一致とみなす。"""
        if self.record is None:
            return False
        return sandbox_id is None or sandbox_id == self.record.sandbox_id

    def commit(
        self,
        record: SandboxRecord,
        files: Iterable[str],
        cache: Mapping[str, FileCacheEntry] | None = None,
    ) -> None:
        """新しいレコードを登録し、追跡ファイルとキャッシュを初期化する。

        既存のレコードは置き換えられるため、呼び出し前にteardownしておくこと。
        """
        if self.record is not None:
            logger.warning(
                "Replacing active sandbox record %s with %s",
                self.record.sandbox_id,
                record.sandbox_id,
            )
        self.record = record
        self.tracked_files.clear()
        self.tracked_files.update(files)
        self.file_cache.clear()
        if cache is not None:
            self.file_cache.update(cache)
        logger.info("Sandbox record committed: %s", record.sandbox_id)

    def clear(self) -> None:
        """レコード、追跡ファイル、キャッシュを全て消去する。"""
        self.record = None
        self.tracked_files.clear()
        self.file_cache.clear()
