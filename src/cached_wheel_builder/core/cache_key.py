"""Cache key derivation.

A key is ``<namespace>-<platform>-py<version>-<sha256>``. The digest covers every
file matched by the hash-key globs, visited in sorted relative-path order, so
the same tree always yields the same key regardless of glob order.
"""

from __future__ import annotations

import hashlib
import os
import platform as _platform
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from loguru import logger

from cached_wheel_builder.core.exceptions import HashInputError

WHEEL_NAMESPACE = "wheel"
CCACHE_NAMESPACE = "ccache"
PIP_NAMESPACE = "pip"

_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class CacheKey:
    namespace: str
    platform: str
    python_version: str
    content_hash: str

    def __str__(self) -> str:
        return f"{self.namespace}-{self.platform}-py{self.python_version}-{self.content_hash}"


def resolve_hash_inputs(patterns: Iterable[str], root: Path) -> list[Path]:
    """Expand glob patterns under ``root`` into a sorted, de-duplicated file list.

    Args:
        patterns: ``root`` からの相対globパターン（``**`` 可）
        root: 基準ディレクトリ

    Returns:
        ``root`` からの相対パス（POSIX表記順にソート）
    """
    root = Path(root)
    matched: set[Path] = set()
    for pattern in patterns:
        if Path(pattern).is_absolute():
            # Path.glob() rejects absolute patterns
            candidates: Iterable[Path] = _absolute_glob(pattern)
        else:
            candidates = root.glob(pattern)
        for path in candidates:
            if path.is_dir():
                continue
            try:
                rel = path.relative_to(root)
            except ValueError:
                rel = path
            matched.add(rel)
    return sorted(matched, key=lambda p: p.as_posix())


def _absolute_glob(pattern: str) -> Iterable[Path]:
    anchor = Path(Path(pattern).anchor)
    return anchor.glob(str(Path(pattern).relative_to(anchor)))


def hash_files(paths: Iterable[Path], root: Path) -> str:
    """SHA-256 over ``path NUL content NUL`` for each file in the given order.

    An empty list hashes the empty stream. A matched file that cannot be read is
    fatal: caching against a digest that silently omits a source is unsafe.
    """
    root = Path(root)
    digest = hashlib.sha256()
    for rel in paths:
        full = rel if rel.is_absolute() else root / rel
        digest.update(rel.as_posix().encode("utf-8"))
        digest.update(b"\0")
        try:
            with open(full, "rb") as f:
                for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                    digest.update(chunk)
        except OSError as exc:
            raise HashInputError(str(rel), exc.strerror or str(exc)) from exc
        digest.update(b"\0")
    return digest.hexdigest()


def detect_platform(environ: Mapping[str, str] | None = None) -> str:
    """``<os>-<arch>``; prefers the CI runner's ``RUNNER_OS``/``RUNNER_ARCH``."""
    environ = os.environ if environ is None else environ
    system = environ.get("RUNNER_OS") or _platform.system() or "unknown"
    arch = environ.get("RUNNER_ARCH") or _platform.machine() or "unknown"
    return f"{system}-{arch}".lower()


def derive_cache_key(
    namespace: str,
    patterns: Iterable[str],
    python_version: str,
    root: Path,
    platform: str | None = None,
) -> CacheKey:
    files = resolve_hash_inputs(patterns, root)
    content_hash = hash_files(files, root)
    key = CacheKey(
        namespace=namespace,
        platform=platform or detect_platform(),
        python_version=python_version,
        content_hash=content_hash,
    )
    logger.info(f"Cache key {namespace}: {key} ({len(files)} files)")
    return key
