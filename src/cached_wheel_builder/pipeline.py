"""Wheel build pipeline: setup, keys, cached build, reconciliation."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from loguru import logger

from cached_wheel_builder.build import run_conditional_build
from cached_wheel_builder.cache_store import CacheStore, DirectoryCacheStore
from cached_wheel_builder.compiler_cache import compiler_cache, dependency_cache
from cached_wheel_builder.config import BuildConfig, validate_config
from cached_wheel_builder.core.cache_key import (
    CCACHE_NAMESPACE,
    PIP_NAMESPACE,
    WHEEL_NAMESPACE,
    CacheKey,
    derive_cache_key,
    detect_platform,
)
from cached_wheel_builder.core.reconcile import GitClient, ReconcileResult, reconcile
from cached_wheel_builder.runner import CommandRunner, SubprocessRunner

_UNSAFE_ARTIFACT_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class PipelineResult:
    artifact_name: str
    cache_key: CacheKey
    ccache_key: CacheKey | None
    restored: bool
    artifacts: tuple[Path, ...]
    reconcile: ReconcileResult


def artifact_name(config: BuildConfig, platform: str) -> str:
    name = f"wheels-{platform}-py{config.python_version}"
    return _UNSAFE_ARTIFACT_CHARS.sub("-", name).strip("-")


def run_pipeline(
    config: BuildConfig,
    runner: CommandRunner | None = None,
    store: CacheStore | None = None,
    environ: Mapping[str, str] | None = None,
) -> PipelineResult:
    """Run every stage in order. Any fatal error propagates to the caller.

    Args:
        config: ビルド設定（最初に検証する）
        runner: 外部コマンド実行（省略時は SubprocessRunner）
        store: キャッシュストア（省略時は cache_dir 配下の DirectoryCacheStore）
        environ: 環境変数（省略時は os.environ）

    Returns:
        PipelineResult
    """
    validate_config(config)
    runner = runner or SubprocessRunner()
    environ = os.environ if environ is None else environ
    if store is None:
        cache_root = config.cache_dir if config.cache_dir.is_absolute() else config.work_dir / config.cache_dir
        store = DirectoryCacheStore(cache_root)

    platform = detect_platform(environ)
    logger.info(f"=== Wheel build start: python {config.python_version} on {platform} ===")

    pip_key = None
    if config.pip_cache_dependency_path:
        pip_key = derive_cache_key(
            PIP_NAMESPACE, config.pip_cache_dependency_path, config.python_version, config.work_dir, platform
        )
    wheel_key = derive_cache_key(WHEEL_NAMESPACE, config.hash_key, config.python_version, config.work_dir, platform)
    ccache_key = None
    if config.ccache:
        ccache_key = derive_cache_key(
            CCACHE_NAMESPACE, config.compiler_hash_key, config.python_version, config.work_dir, platform
        )

    def wrapper():
        return compiler_cache(config, store, ccache_key, environ)

    with dependency_cache(config, runner, store, pip_key):
        outcome = run_conditional_build(
            config,
            runner,
            store,
            wheel_key,
            wrapper=wrapper if ccache_key is not None else None,
        )

    # keep only the entries for this run's keys
    store.prune([str(k) for k in (wheel_key, ccache_key, pip_key) if k is not None])

    git = GitClient(runner, config.work_dir, remote=config.remote)
    reconciled = reconcile(config, git, environ)

    result = PipelineResult(
        artifact_name=artifact_name(config, platform),
        cache_key=wheel_key,
        ccache_key=ccache_key,
        restored=outcome.restored,
        artifacts=outcome.artifacts,
        reconcile=reconciled,
    )
    logger.info(f"=== Wheel build done: {result.artifact_name} ({reconciled.state.value}) ===")
    return result
