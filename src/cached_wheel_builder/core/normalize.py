"""Generated source normalization.

Regenerating C sources (e.g. with Cython) produces churn that carries no
meaning: line endings, trailing whitespace, the generator version banner.
Normalizing before the diff keeps those from turning into commits.
"""

from __future__ import annotations

import fnmatch
import re
from pathlib import Path
from typing import Iterable

from loguru import logger

from cached_wheel_builder.core.cache_key import resolve_hash_inputs

_TRAILING_WS = re.compile(r"[ \t]+$", re.MULTILINE)
_CYTHON_BANNER = re.compile(r"^/\* Generated by Cython [^*]*\*/$", re.MULTILINE)
# Top-level directories of the checkout that only hold tooling or build output.
_SKIP_DIRS = frozenset({".git", ".ccache", ".venv", ".tox", "build", "dist"})


def normalize_text(text: str) -> str:
    """Canonicalize generated source text.

    - CRLF / CR を LF に統一
    - 行末の空白を除去
    - ファイル末尾は改行1つ
    - ``/* Generated by Cython 3.0.11 */`` のバージョン表記を除去

    Idempotent: ``normalize_text(normalize_text(x)) == normalize_text(x)``.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _TRAILING_WS.sub("", text)
    text = _CYTHON_BANNER.sub("/* Generated by Cython */", text)
    text = text.rstrip("\n")
    return text + "\n" if text else ""


def normalize_file(path: Path) -> bool:
    """Rewrite ``path`` in place if normalization changes it."""
    raw = path.read_bytes()
    try:
        original = raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning(f"Skipping non UTF-8 file: {path}")
        return False
    normalized = normalize_text(original)
    if normalized == original:
        return False
    path.write_bytes(normalized.encode("utf-8"))
    return True


def matches_patterns(path: str, patterns: Iterable[str]) -> bool:
    """Whether a relative POSIX path matches any glob (``**/`` may match nothing)."""
    for pattern in patterns:
        candidates = [pattern]
        if pattern.startswith("**/"):
            candidates.append(pattern[3:])
        if any(fnmatch.fnmatchcase(path, candidate) for candidate in candidates):
            return True
    return False


def normalize_paths(root: Path, paths: Iterable[str | Path], patterns: Iterable[str]) -> list[Path]:
    """Normalize the given files that match ``patterns``.

    Args:
        root: 作業ディレクトリ
        paths: 正規化候補（``root`` からの相対パス。通常はビルドで変更されたファイル）
        patterns: 対象とするglobパターン

    Returns:
        書き換えたファイルの相対パス（ソート済み）
    """
    root = Path(root)
    patterns = tuple(patterns)
    candidates = sorted({Path(p) for p in paths}, key=lambda p: p.as_posix())
    changed = []
    for rel in candidates:
        if rel.parts and rel.parts[0] in _SKIP_DIRS:
            continue
        if not matches_patterns(rel.as_posix(), patterns):
            continue
        full = root / rel
        if not full.is_file():
            continue
        if normalize_file(full):
            changed.append(rel)
    logger.info(f"Normalized {len(changed)} of {len(candidates)} changed files")
    return changed


def normalize_tree(root: Path, patterns: Iterable[str]) -> list[Path]:
    """Normalize every file matched by ``patterns`` under ``root``.

    Returns:
        Relative paths of the files that were rewritten, sorted.
    """
    patterns = tuple(patterns)
    return normalize_paths(root, resolve_hash_inputs(patterns, root), patterns)
