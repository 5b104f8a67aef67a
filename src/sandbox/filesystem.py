"""
サンドボックスファイル操作モジュール。

1つのサンドボックスディレクトリに限定したファイルの読み書き・削除・一覧を提供する。
相対パスは正規化し、ディレクトリ外を指すものはPathTraversalとして拒否する。
書き込みと削除は追跡ファイル集合とファイルキャッシュに反映する。
"""

import asyncio
import fnmatch
import logging
import os
import shutil
from collections.abc import MutableMapping, MutableSet
from pathlib import Path

from src.sandbox.errors import FileNotFound, PathTraversal
from src.sandbox.models import FileCacheEntry, SandboxSnapshot

logger = logging.getLogger(__name__)

# 一覧から除外するディレクトリとファイル
EXCLUDED_DIRECTORIES = frozenset({"node_modules", ".git", ".next", "dist", "build"})
EXCLUDED_FILE_PATTERNS = ("*.log", ".DS_Store")

# スナップショットに内容を含めるソースファイル
SOURCE_EXTENSIONS = (".jsx", ".js", ".tsx", ".ts", ".css", ".json", ".html")
SNAPSHOT_MAX_FILES = 50
SNAPSHOT_MAX_FILE_CHARS = 10_000
STRUCTURE_MAX_LINES = 50


def resolve_within(root: Path, relative_path: str) -> Path:
    """相対パスをroot配下の絶対パスに解決する。

    シンボリックリンクも解決した上で判定するため、
    サンドボックス内のリンク経由で外部を指すパスも拒否される。

    Args:
        root: 基準ディレクトリ
        relative_path: ユーザー指定の相対パス

    Returns:
        解決済みの絶対パス

    Raises:
        PathTraversal: root外(またはroot自身)を指す場合
    """
    base = root.resolve()
    candidate = (base / relative_path).resolve()
    if candidate == base or base not in candidate.parents:
        raise PathTraversal(relative_path)
    return candidate


class FileSystemGateway:
    """サンドボックスディレクトリに限定したファイル操作。

    Attributes:
        directory: サンドボックスディレクトリ
        _tracked_files: 追跡ファイル集合(レジストリと共有)
        _file_cache: ファイルキャッシュ(レジストリと共有)
        _owner: 書き込んだファイルの所有ユーザー
        _group: 書き込んだファイルの所有グループ
    """

    def __init__(
        self,
        directory: str | Path,
        tracked_files: MutableSet[str],
        file_cache: MutableMapping[str, FileCacheEntry],
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        self.directory = Path(directory)
        self._tracked_files = tracked_files
        self._file_cache = file_cache
        self._owner = owner
        self._group = group

    def _relative(self, absolute: Path) -> str:
        return absolute.relative_to(self.directory.resolve()).as_posix()

    def _chown(self, path: Path) -> None:
        if self._owner is None and self._group is None:
            return
        try:
            shutil.chown(path, user=self._owner, group=self._group)
        except (OSError, LookupError) as e:
            logger.warning("Failed to set ownership of %s: %s", path, e)

    def _prepare_sync(self) -> bool:
        created = not self.directory.exists()
        self.directory.mkdir(parents=True, exist_ok=True)
        self._chown(self.directory)
        return created

    async def prepare(self) -> bool:
        """サンドボックスディレクトリを作成する。

        Returns:
            この呼び出しで新規作成した場合True
        """
        return await asyncio.to_thread(self._prepare_sync)

    def _write_sync(self, relative_path: str, content: str) -> str:
        target = resolve_within(self.directory, relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        self._chown(target)

        key = self._relative(target)
        self._tracked_files.add(key)
        self._file_cache[key] = FileCacheEntry(
            content=content,
            last_modified_at=target.stat().st_mtime,
        )
        return key

    async def write(self, relative_path: str, content: str) -> str:
        """ファイルを書き込む(既存ファイルは上書き)。

        Args:
            relative_path: サンドボックスディレクトリからの相対パス
            content: 書き込む内容

        Returns:
            正規化した相対パス

        Raises:
            PathTraversal: パスがサンドボックス外を指す場合
        """
        key = await asyncio.to_thread(self._write_sync, relative_path, content)
        logger.info("File written: %s", key)
        return key

    def _read_sync(self, relative_path: str) -> str:
        target = resolve_within(self.directory, relative_path)
        if not target.is_file():
            raise FileNotFound(relative_path)

        key = self._relative(target)
        mtime = target.stat().st_mtime
        cached = self._file_cache.get(key)
        if cached is not None and cached.last_modified_at == mtime:
            return cached.content

        content = target.read_text(encoding="utf-8")
        self._file_cache[key] = FileCacheEntry(content=content, last_modified_at=mtime)
        return content

    async def read(self, relative_path: str) -> str:
        """ファイルを読み込む。

        キャッシュの更新時刻がファイルと一致する場合はキャッシュを返す。

        Raises:
            PathTraversal: パスがサンドボックス外を指す場合
            FileNotFound: ファイルが存在しない場合
        """
        return await asyncio.to_thread(self._read_sync, relative_path)

    def _delete_sync(self, relative_path: str) -> str:
        target = resolve_within(self.directory, relative_path)
        key = self._relative(target)
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", key, e)
        finally:
            # 削除に失敗しても追跡からは外す
            self._tracked_files.discard(key)
            self._file_cache.pop(key, None)
        return key

    async def delete(self, relative_path: str) -> str:
        """ファイルを削除する(ベストエフォート)。

        Returns:
            正規化した相対パス

        Raises:
            PathTraversal: パスがサンドボックス外を指す場合
        """
        key = await asyncio.to_thread(self._delete_sync, relative_path)
        logger.info("File deleted: %s", key)
        return key

    def _list_sync(self) -> list[str]:
        base = self.directory.resolve()
        if not base.is_dir():
            return []

        files: list[str] = []
        for root, dirs, names in os.walk(base):
            dirs[:] = [d for d in dirs if d not in EXCLUDED_DIRECTORIES]
            for name in names:
                if any(fnmatch.fnmatch(name, pattern) for pattern in EXCLUDED_FILE_PATTERNS):
                    continue
                files.append((Path(root) / name).relative_to(base).as_posix())
        return sorted(files)

    async def list(self) -> list[str]:
        """依存・ビルド成果物を除いたファイルの相対パス一覧を返す。"""
        return await asyncio.to_thread(self._list_sync)

    def _snapshot_sync(self) -> SandboxSnapshot:
        paths = self._list_sync()

        files: dict[str, str] = {}
        sources = [p for p in paths if p.endswith(SOURCE_EXTENSIONS)]
        for path in sources[:SNAPSHOT_MAX_FILES]:
            try:
                content = self._read_sync(path)
            except (FileNotFound, PathTraversal, OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping %s in snapshot: %s", path, e)
                continue
            if len(content) >= SNAPSHOT_MAX_FILE_CHARS:
                logger.debug("Skipping large file in snapshot: %s", path)
                continue
            files[path] = content

        return SandboxSnapshot(files=files, structure=render_structure(paths))

    async def snapshot(self) -> SandboxSnapshot:
        """ソースファイルの内容とディレクトリ構造をまとめて返す。

        一覧と同じ除外規則を適用し、ソース拡張子のファイルのみ内容を含める。
        内容はキャッシュを経由して読み込む。大きすぎるファイルは省く。
        """
        return await asyncio.to_thread(self._snapshot_sync)


def render_structure(paths: list[str], max_lines: int = STRUCTURE_MAX_LINES) -> str:
    """相対パス一覧をインデント付きのツリー表記にする(最大max_lines行)。"""
    lines = ["Sandbox Structure:"]
    seen: set[tuple[str, ...]] = set()
    for path in paths:
        parts = path.split("/")
        for depth in range(1, len(parts)):
            prefix = tuple(parts[:depth])
            if prefix not in seen:
                seen.add(prefix)
                lines.append(f"{'  ' * depth}📁 {parts[depth - 1]}/")
        lines.append(f"{'  ' * len(parts)}📄 {parts[-1]}")
    return "\n".join(lines[:max_lines])
