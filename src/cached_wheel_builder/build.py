"""Conditional wheel build against the primary cache key."""

from __future__ import annotations

import shlex
import shutil
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from loguru import logger

from cached_wheel_builder.cache_store import CacheStore
from cached_wheel_builder.config import BuildConfig
from cached_wheel_builder.core.cache_key import CacheKey
from cached_wheel_builder.core.exceptions import PreconditionError
from cached_wheel_builder.runner import CommandRunner

BuildWrapper = Callable[[], AbstractContextManager[Mapping[str, str] | None]]


@dataclass(frozen=True)
class BuildOutcome:
    key: CacheKey
    restored: bool
    artifacts: tuple[Path, ...] = field(default_factory=tuple)


def split_build_command(command: str) -> list[str]:
    try:
        args = shlex.split(command)
    except ValueError as exc:
        raise PreconditionError(f"Cannot parse build command {command!r}: {exc}") from exc
    if not args:
        raise PreconditionError("Build command is empty")
    return args


def list_artifacts(dist_path: Path) -> tuple[Path, ...]:
    if not dist_path.is_dir():
        return ()
    return tuple(sorted(p for p in dist_path.iterdir() if p.is_file()))


def run_conditional_build(
    config: BuildConfig,
    runner: CommandRunner,
    store: CacheStore,
    key: CacheKey,
    wrapper: BuildWrapper | None = None,
) -> BuildOutcome:
    """Restore build output for ``key`` or run the build command once.

    Args:
        config: ビルド設定
        runner: 外部コマンド実行
        store: キャッシュストア
        key: 成果物のプライマリキー（完全一致のみ参照）
        wrapper: ビルド実行時だけ入るコンテキスト（ccache の復元/保存）。
            yield した辞書はビルドコマンドの環境変数に追加される

    Returns:
        BuildOutcome

    Raises:
        ExternalToolError: ビルドコマンドが非ゼロで終了した場合（リトライしない）
    """
    dist_path = config.dist_path
    # stale files from an earlier run must not be restored over or cached
    if dist_path.is_dir():
        shutil.rmtree(dist_path)
    if store.restore(str(key), dist_path):
        artifacts = list_artifacts(dist_path)
        logger.info(f"Build restored from cache ({len(artifacts)} artifacts), skipping build command")
        return BuildOutcome(key=key, restored=True, artifacts=artifacts)

    args = split_build_command(config.build_command)
    logger.info(f"Running build: {config.build_command}")
    with (wrapper or nullcontext)() as extra_env:
        result = runner.run(args, cwd=config.work_dir, env=dict(extra_env or {}))
        result.check()

    artifacts = list_artifacts(dist_path)
    if not artifacts:
        logger.warning(f"Build produced no files in {dist_path}")
    store.save(str(key), dist_path)
    logger.info(f"Build finished: {len(artifacts)} artifacts")
    return BuildOutcome(key=key, restored=False, artifacts=artifacts)
