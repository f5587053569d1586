"""Action inputs and the immutable build configuration.

Inputs arrive as the hyphenated names the composite action declares
(``python-version``, ``hash-key`` ...). They can come from GitHub Actions
``INPUT_*`` environment variables, from a YAML file, or from CLI flags; all of
them are funnelled through ``config_from_inputs`` and validated before any
side effect happens.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml
from loguru import logger

from cached_wheel_builder.core.exceptions import PreconditionError

DEFAULT_COMMIT_MESSAGE = "chore: compile C files for source control"
DEFAULT_BUILD_COMMAND = "python -m build --wheel"
DEFAULT_NORMALIZE_PATTERNS = ("**/*.c", "**/*.h")

INPUT_NAMES = (
    "python-version",
    "hash-key",
    "pip-cache-dependency-path",
    "ccache",
    "ccache-hash-key",
    "push-source",
    "commit-message",
    "normalize-source",
    "trigger-pr-number",
    "trigger-branch-name",
    "build-command",
)

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


@dataclass(frozen=True)
class TriggerContext:
    """What triggered the run. Only used to render the PR provenance line."""

    pr_number: int | None = None
    branch_name: str | None = None


@dataclass(frozen=True)
class BuildConfig:
    python_version: str
    hash_key: tuple[str, ...]
    pip_cache_dependency_path: tuple[str, ...] = ()
    ccache: bool = False
    ccache_hash_key: tuple[str, ...] = ()
    push_source: bool = False
    normalize_source: bool = False
    commit_message: str = DEFAULT_COMMIT_MESSAGE
    build_command: str = DEFAULT_BUILD_COMMAND
    trigger: TriggerContext = field(default_factory=TriggerContext)
    work_dir: Path = Path(".")
    dist_dir: Path = Path("dist")
    cache_dir: Path = Path(".wheel-ci-cache")
    normalize_patterns: tuple[str, ...] = DEFAULT_NORMALIZE_PATTERNS
    remote: str = "origin"
    target_branch: str | None = None

    @property
    def compiler_hash_key(self) -> tuple[str, ...]:
        """Globs for the compiler cache key (falls back to ``hash_key``)."""
        return self.ccache_hash_key or self.hash_key

    @property
    def dist_path(self) -> Path:
        return self.dist_dir if self.dist_dir.is_absolute() else self.work_dir / self.dist_dir


def parse_bool(value: Any, name: str = "value") -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise PreconditionError(f"Input '{name}' must be a boolean, got {value!r}")


def parse_multiline(value: Any) -> tuple[str, ...]:
    """Split a newline-separated input into entries.

    Blank lines and ``#`` comment lines are dropped. Lists pass through.
    """
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        lines = [str(v) for v in value]
    else:
        lines = str(value).splitlines()
    entries = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        entries.append(line)
    return tuple(entries)


def _parse_pr_number(value: Any) -> int | None:
    if value is None:
        return None
    text = str(value).strip().lstrip("#")
    if not text:
        return None
    try:
        number = int(text)
    except ValueError:
        raise PreconditionError(
            f"Input 'trigger-pr-number' must be an integer, got {value!r}"
        ) from None
    if number <= 0:
        raise PreconditionError(f"Input 'trigger-pr-number' must be positive, got {number}")
    return number


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def validate_config(config: BuildConfig) -> BuildConfig:
    """Reject invalid configurations before any build or git operation runs."""
    if not config.python_version.strip():
        raise PreconditionError("Input 'python-version' is required")
    if not config.hash_key:
        raise PreconditionError("Input 'hash-key' is required and must list at least one glob")
    if config.normalize_source and not config.push_source:
        raise PreconditionError("Input 'normalize-source' requires 'push-source' to be true")
    if not config.build_command.strip():
        raise PreconditionError("Input 'build-command' must not be empty")
    if config.push_source and not config.commit_message.strip():
        raise PreconditionError("Input 'commit-message' must not be empty when 'push-source' is true")
    return config


def config_from_inputs(inputs: Mapping[str, Any], **overrides: Any) -> BuildConfig:
    """Build and validate a BuildConfig from an action-input mapping.

    Args:
        inputs: ハイフン区切りの入力名 → 値
        overrides: BuildConfig のフィールドを直接上書きする値（work_dir など）

    Returns:
        検証済みの BuildConfig

    Raises:
        PreconditionError: 入力が不正な場合
    """
    unknown = sorted(set(inputs) - set(INPUT_NAMES))
    if unknown:
        logger.warning(f"Ignoring unknown inputs: {', '.join(unknown)}")

    python_version = _optional_str(inputs.get("python-version"))
    if python_version is None:
        raise PreconditionError("Input 'python-version' is required")

    config = BuildConfig(
        python_version=python_version,
        hash_key=parse_multiline(inputs.get("hash-key")),
        pip_cache_dependency_path=parse_multiline(inputs.get("pip-cache-dependency-path")),
        ccache=parse_bool(inputs.get("ccache"), "ccache"),
        ccache_hash_key=parse_multiline(inputs.get("ccache-hash-key")),
        push_source=parse_bool(inputs.get("push-source"), "push-source"),
        normalize_source=parse_bool(inputs.get("normalize-source"), "normalize-source"),
        commit_message=_optional_str(inputs.get("commit-message")) or DEFAULT_COMMIT_MESSAGE,
        build_command=_optional_str(inputs.get("build-command")) or DEFAULT_BUILD_COMMAND,
        trigger=TriggerContext(
            pr_number=_parse_pr_number(inputs.get("trigger-pr-number")),
            branch_name=_optional_str(inputs.get("trigger-branch-name")),
        ),
    )
    if overrides:
        config = replace(config, **overrides)
    return validate_config(config)


def load_inputs_from_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect action inputs from ``INPUT_<NAME>`` environment variables.

    GitHub Actions upper-cases the input name and keeps hyphens
    (``python-version`` -> ``INPUT_PYTHON-VERSION``).
    """
    environ = os.environ if environ is None else environ
    inputs: dict[str, str] = {}
    for name in INPUT_NAMES:
        env_name = "INPUT_" + name.replace(" ", "_").upper()
        if env_name in environ:
            inputs[name] = environ[env_name]
    return inputs


def load_inputs_from_yaml(path: Path) -> dict[str, Any]:
    """YAMLファイルから入力値を読み込む.

    Args:
        path: 入力値を記述したYAMLファイル（トップレベルはマッピング）

    Returns:
        入力名 → 値 の辞書
    """
    if not path.exists():
        raise PreconditionError(f"Inputs file not found: {path}")
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise PreconditionError(f"Invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PreconditionError(f"Inputs file must contain a mapping: {path}")
    inputs = {str(k): v for k, v in data.items()}
    logger.info(f"Loaded {len(inputs)} inputs from {path}")
    return inputs
