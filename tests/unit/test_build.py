"""Unit tests for the conditional build and cache wrapping."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path

import pytest

from cached_wheel_builder.build import list_artifacts, run_conditional_build, split_build_command
from cached_wheel_builder.cache_store import DirectoryCacheStore
from cached_wheel_builder.compiler_cache import (
    ccache_dir,
    ccache_environment,
    compiler_cache,
    dependency_cache,
)
from cached_wheel_builder.config import BuildConfig
from cached_wheel_builder.core.cache_key import CacheKey
from cached_wheel_builder.core.exceptions import CacheStoreError, ExternalToolError, PreconditionError
from cached_wheel_builder.runner import CommandResult

KEY = CacheKey("wheel", "linux-x64", "3.12", "deadbeef")
CCACHE_KEY = CacheKey("ccache", "linux-x64", "3.12", "deadbeef")
PIP_KEY = CacheKey("pip", "linux-x64", "3.12", "cafe")


def _config(tmp_path: Path, **kwargs) -> BuildConfig:
    return BuildConfig(python_version="3.12", hash_key=("setup.py",), work_dir=tmp_path, **kwargs)


def _writes_wheel(dist: Path, name: str = "pkg-1.0-cp312-cp312-linux_x86_64.whl"):
    def handler(args, cwd, env):
        dist.mkdir(parents=True, exist_ok=True)
        (dist / name).write_bytes(b"wheel")
        return CommandResult(tuple(args), 0, "built", "")

    return handler


class TestSplitBuildCommand:
    def test_default(self) -> None:
        assert split_build_command("python -m build --wheel") == ["python", "-m", "build", "--wheel"]

    def test_quotes(self) -> None:
        assert split_build_command("pip wheel -w dist 'my pkg'") == ["pip", "wheel", "-w", "dist", "my pkg"]

    def test_unbalanced_quotes(self) -> None:
        with pytest.raises(PreconditionError, match="Cannot parse"):
            split_build_command("python -m 'build")


class TestRunConditionalBuild:
    def test_miss_builds_and_saves(self, tmp_path: Path, fake_runner) -> None:
        config = _config(tmp_path)
        store = DirectoryCacheStore(tmp_path / "cache")
        fake_runner.on(["python", "-m", "build"], _writes_wheel(config.dist_path))

        outcome = run_conditional_build(config, fake_runner, store, KEY)

        assert outcome.restored is False
        assert [p.name for p in outcome.artifacts] == ["pkg-1.0-cp312-cp312-linux_x86_64.whl"]
        assert fake_runner.called("python", "-m", "build", "--wheel")
        assert store.contains(str(KEY))

    def test_hit_skips_build(self, tmp_path: Path, fake_runner) -> None:
        config = _config(tmp_path)
        store = DirectoryCacheStore(tmp_path / "cache")
        seeded = tmp_path / "seed"
        seeded.mkdir()
        (seeded / "cached.whl").write_bytes(b"cached")
        store.save(str(KEY), seeded)

        outcome = run_conditional_build(config, fake_runner, store, KEY)

        assert outcome.restored is True
        assert fake_runner.calls == []
        assert (config.dist_path / "cached.whl").read_bytes() == b"cached"

    def test_failure_propagates_without_save(self, tmp_path: Path, fake_runner) -> None:
        config = _config(tmp_path)
        store = DirectoryCacheStore(tmp_path / "cache")
        fake_runner.on(
            ["python"],
            CommandResult(("python", "-m", "build", "--wheel"), 1, "", "error: Microsoft Visual C++ required"),
        )

        with pytest.raises(ExternalToolError, match="Visual C\\+\\+") as excinfo:
            run_conditional_build(config, fake_runner, store, KEY)

        assert excinfo.value.returncode == 1
        assert len(fake_runner.calls) == 1
        assert not store.contains(str(KEY))

    def test_custom_command(self, tmp_path: Path, fake_runner) -> None:
        config = _config(tmp_path, build_command="pip wheel . -w dist")
        store = DirectoryCacheStore(tmp_path / "cache")
        run_conditional_build(config, fake_runner, store, KEY)
        assert fake_runner.calls == [["pip", "wheel", ".", "-w", "dist"]]

    def test_stale_dist_cleared_before_build(self, tmp_path: Path, fake_runner) -> None:
        config = _config(tmp_path)
        store = DirectoryCacheStore(tmp_path / "cache")
        config.dist_path.mkdir()
        (config.dist_path / "old-0.9.whl").write_bytes(b"old")
        fake_runner.on(["python", "-m", "build"], _writes_wheel(config.dist_path))

        outcome = run_conditional_build(config, fake_runner, store, KEY)

        assert [p.name for p in outcome.artifacts] == ["pkg-1.0-cp312-cp312-linux_x86_64.whl"]
        restored = tmp_path / "restored"
        store.restore(str(KEY), restored)
        assert [p.name for p in restored.iterdir()] == ["pkg-1.0-cp312-cp312-linux_x86_64.whl"]

    def test_wrapper_env_reaches_build(self, tmp_path: Path, fake_runner) -> None:
        config = _config(tmp_path)
        store = DirectoryCacheStore(tmp_path / "cache")
        entered = []

        @contextmanager
        def wrapper():
            entered.append(True)
            yield {"CCACHE_DIR": "/tmp/cc"}

        run_conditional_build(config, fake_runner, store, KEY, wrapper=wrapper)
        assert entered == [True]
        assert fake_runner.envs[0]["CCACHE_DIR"] == "/tmp/cc"

    def test_wrapper_not_entered_on_hit(self, tmp_path: Path, fake_runner) -> None:
        config = _config(tmp_path)
        store = DirectoryCacheStore(tmp_path / "cache")
        seeded = tmp_path / "seed"
        seeded.mkdir()
        (seeded / "cached.whl").write_bytes(b"cached")
        store.save(str(KEY), seeded)
        entered = []

        @contextmanager
        def wrapper():
            entered.append(True)
            yield {}

        run_conditional_build(config, fake_runner, store, KEY, wrapper=wrapper)
        assert entered == []


class TestListArtifacts:
    def test_missing_dir(self, tmp_path: Path) -> None:
        assert list_artifacts(tmp_path / "dist") == ()


class TestCompilerCache:
    def test_saved_even_when_build_fails(self, tmp_path: Path) -> None:
        """ビルド失敗時もコンパイラキャッシュは保存されること."""
        config = _config(tmp_path, ccache=True)
        store = DirectoryCacheStore(tmp_path / "cache")

        with pytest.raises(RuntimeError):
            with compiler_cache(config, store, CCACHE_KEY, environ={"PATH": ""}):
                (ccache_dir(config) / "partial.o").write_bytes(b"obj")
                raise RuntimeError("compile failed")

        assert store.contains(str(CCACHE_KEY))

    def test_save_error_does_not_mask_build_error(self, tmp_path: Path) -> None:
        config = _config(tmp_path, ccache=True)

        class FailingSaveStore(DirectoryCacheStore):
            def save(self, key: str, src: Path) -> None:
                raise CacheStoreError("disk full")

        store = FailingSaveStore(tmp_path / "cache")
        failure = ExternalToolError(["python", "-m", "build"], 1, "", "error: compile failed")

        with pytest.raises(ExternalToolError, match="compile failed"):
            with compiler_cache(config, store, CCACHE_KEY, environ={"PATH": ""}):
                raise failure

    def test_save_error_after_success_propagates(self, tmp_path: Path) -> None:
        config = _config(tmp_path, ccache=True)

        class FailingSaveStore(DirectoryCacheStore):
            def save(self, key: str, src: Path) -> None:
                raise CacheStoreError("disk full")

        with pytest.raises(CacheStoreError, match="disk full"):
            with compiler_cache(config, FailingSaveStore(tmp_path / "cache"), CCACHE_KEY, environ={"PATH": ""}):
                pass

    def test_restores_previous_state(self, tmp_path: Path) -> None:
        config = _config(tmp_path, ccache=True)
        store = DirectoryCacheStore(tmp_path / "cache")
        seeded = tmp_path / "seed"
        seeded.mkdir()
        (seeded / "stats").write_text("hits 3", encoding="utf-8")
        store.save(str(CCACHE_KEY), seeded)

        with compiler_cache(config, store, CCACHE_KEY, environ={"PATH": ""}) as env:
            assert (ccache_dir(config) / "stats").read_text(encoding="utf-8") == "hits 3"
            assert env["CCACHE_DIR"] == str(ccache_dir(config).resolve())

    def test_launcher_only_when_ccache_installed(self, tmp_path: Path) -> None:
        config = _config(tmp_path, ccache=True)
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        env = ccache_environment(config, {"PATH": str(bin_dir)})
        assert "CC" not in env

        fake_ccache = bin_dir / "ccache"
        fake_ccache.write_text("#!/bin/sh\n", encoding="utf-8")
        fake_ccache.chmod(0o755)
        env = ccache_environment(config, {"PATH": str(bin_dir), "CC": "gcc"})
        assert env["CC"] == "ccache gcc"
        assert env["CXX"] == "ccache c++"


class TestDependencyCache:
    def test_disabled_without_key(self, tmp_path: Path, fake_runner) -> None:
        config = _config(tmp_path)
        store = DirectoryCacheStore(tmp_path / "cache")
        with dependency_cache(config, fake_runner, store, None) as path:
            assert path is None
        assert fake_runner.calls == []

    def test_restores_and_saves_pip_cache(self, tmp_path: Path, fake_runner) -> None:
        pip_dir = tmp_path / "pip-cache"
        config = _config(tmp_path, pip_cache_dependency_path=("requirements.txt",))
        store = DirectoryCacheStore(tmp_path / "cache")
        fake_runner.on(["python", "-m", "pip", "cache", "dir"], f"{pip_dir}\n")

        with dependency_cache(config, fake_runner, store, PIP_KEY) as path:
            assert path == pip_dir
            pip_dir.mkdir(exist_ok=True)
            (pip_dir / "http").write_bytes(b"x")

        assert store.contains(str(PIP_KEY))

    def test_pip_cache_disabled(self, tmp_path: Path, fake_runner) -> None:
        config = _config(tmp_path, pip_cache_dependency_path=("requirements.txt",))
        store = DirectoryCacheStore(tmp_path / "cache")
        fake_runner.on(["python", "-m", "pip", "cache", "dir"], "")
        with dependency_cache(config, fake_runner, store, PIP_KEY) as path:
            assert path is None
