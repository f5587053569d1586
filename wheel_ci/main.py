"""CI entry point: read action inputs, run the cached wheel build, write outputs."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any, Mapping, Sequence

from loguru import logger

from cached_wheel_builder.config import config_from_inputs, load_inputs_from_env, load_inputs_from_yaml
from cached_wheel_builder.core.exceptions import ActionError, PreconditionError
from cached_wheel_builder.pipeline import PipelineResult, run_pipeline
from cached_wheel_builder.runner import CommandRunner
from wheel_ci.outputs import write_step_outputs

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PRECONDITION = 2

# CLI flag dest -> action input name
_FLAG_INPUTS = {
    "python_version": "python-version",
    "hash_key": "hash-key",
    "pip_cache_dependency_path": "pip-cache-dependency-path",
    "ccache": "ccache",
    "ccache_hash_key": "ccache-hash-key",
    "push_source": "push-source",
    "commit_message": "commit-message",
    "normalize_source": "normalize-source",
    "trigger_pr_number": "trigger-pr-number",
    "trigger_branch_name": "trigger-branch-name",
    "build_command": "build-command",
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Cached Python wheel build for CI")
    p.add_argument("--python-version", default=None, help="Python version the wheel is built for")
    p.add_argument(
        "--hash-key",
        action="append",
        default=None,
        help="glob whose file contents feed the build cache key (repeatable or newline separated)",
    )
    p.add_argument(
        "--pip-cache-dependency-path",
        action="append",
        default=None,
        help="dependency files that key the pip cache (repeatable)",
    )
    p.add_argument("--ccache", default=None, help="enable the compiler cache (true/false)")
    p.add_argument(
        "--ccache-hash-key",
        action="append",
        default=None,
        help="globs for the compiler cache key (default: --hash-key)",
    )
    p.add_argument("--push-source", default=None, help="commit generated sources (true/false)")
    p.add_argument("--commit-message", default=None, help="commit message for generated sources")
    p.add_argument(
        "--normalize-source",
        default=None,
        help="normalize generated sources before diffing; requires --push-source true",
    )
    p.add_argument("--trigger-pr-number", default=None, help="PR that triggered the run")
    p.add_argument("--trigger-branch-name", default=None, help="branch that triggered the run")
    p.add_argument("--build-command", default=None, help="build command (default: python -m build --wheel)")
    p.add_argument("--inputs-yml", type=Path, default=None, help="YAML file with action inputs")
    p.add_argument("--work-dir", type=Path, default=Path("."), help="repository checkout (default: cwd)")
    p.add_argument("--dist-dir", type=Path, default=None, help="build output directory (default: dist)")
    p.add_argument("--cache-dir", type=Path, default=None, help="local cache store root")
    p.add_argument("--target-branch", default=None, help="branch to push generated sources to")
    p.add_argument("--remote", default=None, help="git remote (default: origin)")
    p.add_argument("--log-level", default="INFO", help="loguru log level")
    return p


def collect_inputs(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """env < YAML < CLI の順で上書きして入力値をまとめる.

    Args:
        args: build_parser() でパースした引数
        environ: ``INPUT_*`` を読む環境変数（省略時は os.environ）

    Returns:
        アクション入力名（ハイフン区切り）をキーとする辞書
    """
    inputs: dict[str, Any] = dict(load_inputs_from_env(environ))
    if args.inputs_yml is not None:
        inputs.update(load_inputs_from_yaml(args.inputs_yml))
    for dest, name in _FLAG_INPUTS.items():
        value = getattr(args, dest)
        if value is None:
            continue
        if isinstance(value, list):
            value = "\n".join(value)
        inputs[name] = value
    return inputs


def _overrides(args: argparse.Namespace) -> dict:
    overrides = {"work_dir": args.work_dir}
    if args.dist_dir is not None:
        overrides["dist_dir"] = args.dist_dir
    if args.cache_dir is not None:
        overrides["cache_dir"] = args.cache_dir
    if args.target_branch:
        overrides["target_branch"] = args.target_branch
    if args.remote:
        overrides["remote"] = args.remote
    return overrides


def step_outputs(result: PipelineResult) -> dict[str, str]:
    outputs = {
        "artifact-name": result.artifact_name,
        "cache-key": str(result.cache_key),
        "cache-hit": "true" if result.restored else "false",
        "reconcile-state": result.reconcile.state.value,
    }
    if result.reconcile.pr_url:
        outputs["pull-request-url"] = result.reconcile.pr_url
    return outputs


def run(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
    runner: CommandRunner | None = None,
) -> int:
    """CLI 本体. ``main`` から呼ばれ、テストからは直接呼ぶ.

    Args:
        argv: コマンドライン引数（省略時は sys.argv）
        environ: 環境変数（``INPUT_*`` と ``GITHUB_OUTPUT`` を読む）
        runner: 外部コマンド実行（テストではフェイクを渡す）

    Returns:
        終了コード（0: 成功, 1: 外部ツール/キャッシュの失敗, 2: 前提条件違反）
    """
    args = build_parser().parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    environ = os.environ if environ is None else environ
    try:
        config = config_from_inputs(collect_inputs(args, environ), **_overrides(args))
        result = run_pipeline(config, runner=runner, environ=environ)
    except PreconditionError as exc:
        logger.error(f"Precondition failed: {exc}")
        return EXIT_PRECONDITION
    except ActionError as exc:
        logger.error(str(exc))
        return EXIT_FAILURE

    write_step_outputs(step_outputs(result), environ=environ)
    return EXIT_OK


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
