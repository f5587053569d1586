"""Key-value cache store for build directories.

The pipeline only needs exact-key ``restore``/``save``; ``prune`` drops
entries that are no longer referenced by the current keys. ``DirectoryCacheStore``
keeps one ``.tar.gz`` per key under a local root (a CI cache mount or a shared
volume); saves are atomic renames so concurrent writers end up last-write-wins.
"""

from __future__ import annotations

import os
import re
import tarfile
import tempfile
from pathlib import Path
from typing import Iterable, Protocol

from loguru import logger

from cached_wheel_builder.core.exceptions import CacheStoreError

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class CacheStore(Protocol):
    def restore(self, key: str, dest: Path) -> bool: ...

    def save(self, key: str, src: Path) -> None: ...

    def prune(self, keep: Iterable[str]) -> list[str]: ...


class DirectoryCacheStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _archive_path(self, key: str) -> Path:
        return self.root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.tar.gz"

    def contains(self, key: str) -> bool:
        return self._archive_path(key).exists()

    def restore(self, key: str, dest: Path) -> bool:
        """Extract the entry for ``key`` into ``dest``.

        Returns:
            True on a hit, False when no entry exists for exactly this key
        """
        archive = self._archive_path(key)
        if not archive.exists():
            logger.info(f"Cache miss: {key}")
            return False

        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                for member in tar.getmembers():
                    target = (dest / member.name).resolve()
                    if not target.is_relative_to(dest.resolve()):
                        raise CacheStoreError(f"Refusing to extract {member.name} outside {dest}")
                    if member.issym() or member.islnk():
                        raise CacheStoreError(f"Refusing to extract link {member.name}")
                tar.extractall(dest, filter="data")
        except (tarfile.TarError, OSError) as exc:
            raise CacheStoreError(f"Failed to restore cache {key} from {archive}: {exc}") from exc

        logger.info(f"Cache hit: {key} -> {dest}")
        return True

    def save(self, key: str, src: Path) -> None:
        """``src`` ディレクトリを ``key`` のエントリとして保存する.

        Args:
            key: キャッシュキー（既存エントリは置き換える）
            src: 保存するディレクトリ。存在しなければ警告して何もしない

        Raises:
            CacheStoreError: アーカイブの作成に失敗した場合
        """
        src = Path(src)
        if not src.is_dir():
            logger.warning(f"Nothing to cache for {key}: {src} does not exist")
            return

        self.root.mkdir(parents=True, exist_ok=True)
        archive = self._archive_path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        os.close(fd)
        try:
            with tarfile.open(tmp_name, "w:gz") as tar:
                for path in sorted(src.rglob("*")):
                    if path.is_file() and not path.is_symlink():
                        tar.add(path, arcname=path.relative_to(src).as_posix())
            os.replace(tmp_name, archive)
        except (tarfile.TarError, OSError) as exc:
            raise CacheStoreError(f"Failed to save cache {key} to {archive}: {exc}") from exc
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

        logger.info(f"Cache saved: {key} ({archive.stat().st_size} bytes)")

    def prune(self, keep: Iterable[str]) -> list[str]:
        """Delete every entry except the ones for ``keep``.

        Returns:
            File names of the removed archives, sorted
        """
        if not self.root.is_dir():
            return []
        kept = {self._archive_path(key).name for key in keep}
        removed = []
        for archive in sorted(self.root.glob("*.tar.gz")):
            if archive.name in kept:
                continue
            try:
                archive.unlink()
            except OSError as exc:
                raise CacheStoreError(f"Failed to prune cache entry {archive}: {exc}") from exc
            removed.append(archive.name)
        if removed:
            logger.info(f"Pruned {len(removed)} stale cache entries from {self.root}")
        return removed
