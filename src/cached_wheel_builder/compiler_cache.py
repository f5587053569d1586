"""Compiler (ccache) and dependency (pip) cache wrapping."""

from __future__ import annotations

import os
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping

from loguru import logger

from cached_wheel_builder.cache_store import CacheStore
from cached_wheel_builder.config import BuildConfig
from cached_wheel_builder.core.cache_key import CacheKey
from cached_wheel_builder.core.exceptions import CacheStoreError
from cached_wheel_builder.runner import CommandRunner

CCACHE_DIRNAME = ".ccache"


def ccache_dir(config: BuildConfig) -> Path:
    return config.work_dir / CCACHE_DIRNAME


def ccache_environment(
    config: BuildConfig,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment additions that route compiler invocations through ccache."""
    environ = os.environ if environ is None else environ
    env = {
        "CCACHE_DIR": str(ccache_dir(config).resolve()),
        "CCACHE_BASEDIR": str(config.work_dir.resolve()),
        "CCACHE_COMPILERCHECK": "content",
    }
    if shutil.which("ccache", path=environ.get("PATH")) is None:
        logger.warning("ccache not found on PATH; compiler cache directory is set but unused")
        return env
    env["CC"] = f"ccache {environ.get('CC', 'cc')}"
    env["CXX"] = f"ccache {environ.get('CXX', 'c++')}"
    return env


@contextmanager
def compiler_cache(
    config: BuildConfig,
    store: CacheStore,
    key: CacheKey,
    environ: Mapping[str, str] | None = None,
) -> Iterator[dict[str, str]]:
    """Restore the ccache directory, yield build env, always save afterwards.

    The save runs even when the build fails: ccache entries are additive, so
    partial compiler state is safe to persist. A save error after a failed build
    is logged and the build error is re-raised.
    """
    cache_path = ccache_dir(config)
    store.restore(str(key), cache_path)
    cache_path.mkdir(parents=True, exist_ok=True)
    try:
        yield ccache_environment(config, environ)
    except BaseException:
        # the build failure is what the caller must see
        logger.info(f"Saving compiler cache after failed build: {key}")
        try:
            store.save(str(key), cache_path)
        except CacheStoreError as exc:
            logger.error(f"Could not save compiler cache {key}: {exc}")
        raise
    logger.info(f"Saving compiler cache: {key}")
    store.save(str(key), cache_path)


def pip_cache_dir(config: BuildConfig, runner: CommandRunner) -> Path:
    result = runner.run(["python", "-m", "pip", "cache", "dir"], cwd=config.work_dir).check()
    lines = result.stdout.strip().splitlines()
    if not lines:
        # pip prints nothing when its cache is disabled
        return Path()
    return Path(lines[-1].strip())


@contextmanager
def dependency_cache(
    config: BuildConfig,
    runner: CommandRunner,
    store: CacheStore,
    key: CacheKey | None,
) -> Iterator[Path | None]:
    """Restore pip's download cache around the wrapped block.

    Saved only when the block completes, so a failed run does not publish a
    dependency cache for inputs that never resolved.
    """
    if key is None:
        yield None
        return

    cache_path = pip_cache_dir(config, runner)
    if cache_path == Path():
        logger.warning("pip cache is disabled; skipping dependency cache")
        yield None
        return

    store.restore(str(key), cache_path)
    yield cache_path
    store.save(str(key), cache_path)
