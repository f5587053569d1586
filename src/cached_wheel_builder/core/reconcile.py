"""Post-build reconciliation: normalize, diff, then push or open a PR.

State flow::

    CLEAN -> [NORMALIZED] -> DIFF_CHECKED -> NO_CHANGE | BRANCH_GONE | DIRECT_PUSH | PR_OPENED

The terminal choice is made by ``decide_outcome`` (a pure function); everything
that talks to git goes through ``GitClient`` so it can run against a fake runner.
"""

from __future__ import annotations

import fnmatch
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

from loguru import logger

from cached_wheel_builder.config import BuildConfig, TriggerContext
from cached_wheel_builder.core.exceptions import ExternalToolError, PreconditionError
from cached_wheel_builder.core.normalize import normalize_paths
from cached_wheel_builder.runner import CommandRunner

BOT_NAME = "github-actions[bot]"
BOT_EMAIL = "41898282+github-actions[bot]@users.noreply.github.com"
PR_BRANCH_PREFIX = "wheel-ci"

# Build byproducts that never belong in a source commit. Root directories are
# matched on the first path component only, the rest at any depth.
IGNORED_ROOT_DIRS = ("build", "dist", ".ccache", ".wheel-ci-cache")
IGNORED_ANYWHERE = ("__pycache__", "*.egg-info")


class ReconcileState(str, Enum):
    CLEAN = "clean"
    NORMALIZED = "normalized"
    DIFF_CHECKED = "diff_checked"
    NO_CHANGE = "no_change"
    BRANCH_GONE = "branch_gone"
    DIRECT_PUSH = "direct_push"
    PR_OPENED = "pr_opened"


TERMINAL_STATES = frozenset(
    {
        ReconcileState.NO_CHANGE,
        ReconcileState.BRANCH_GONE,
        ReconcileState.DIRECT_PUSH,
        ReconcileState.PR_OPENED,
    }
)


@dataclass(frozen=True)
class ChangeSet:
    paths: tuple[str, ...] = ()

    @classmethod
    def of(cls, paths: Iterable[str]) -> ChangeSet:
        return cls(tuple(sorted(set(paths))))

    def __bool__(self) -> bool:
        return bool(self.paths)

    def __len__(self) -> int:
        return len(self.paths)


@dataclass(frozen=True)
class ReconcileResult:
    state: ReconcileState
    changeset: ChangeSet = field(default_factory=ChangeSet)
    branch: str | None = None
    pr_url: str | None = None
    history: tuple[ReconcileState, ...] = ()


def decide_outcome(changeset_empty: bool, branch_exists: bool, write_access: bool) -> ReconcileState:
    """Pick the terminal state once the diff has been checked."""
    if changeset_empty:
        return ReconcileState.NO_CHANGE
    if not branch_exists:
        return ReconcileState.BRANCH_GONE
    if write_access:
        return ReconcileState.DIRECT_PUSH
    return ReconcileState.PR_OPENED


def provenance_line(trigger: TriggerContext) -> str | None:
    """PR番号を優先し、なければブランチ名、どちらもなければ None."""
    if trigger.pr_number is not None:
        return f"Triggered by #{trigger.pr_number}"
    if trigger.branch_name:
        return f"Triggered by branch: {trigger.branch_name}"
    return None


def build_pr_body(commit_message: str, trigger: TriggerContext, changeset: ChangeSet) -> str:
    """自動PRの本文を組み立てる.

    Args:
        commit_message: コミットメッセージ（PRタイトルにも使う）
        trigger: 起動元（PR番号 / ブランチ名）
        changeset: 変更ファイル

    Returns:
        Markdown形式の本文（起動元があれば ``Triggered by ...`` 行を含む）
    """
    lines = [
        "Automated update of generated sources produced by the wheel build.",
        "",
    ]
    provenance = provenance_line(trigger)
    if provenance:
        lines.extend([provenance, ""])
    lines.append(f"Commit: `{commit_message}`")
    lines.append("")
    lines.append(f"Changed files ({len(changeset)}):")
    lines.extend(f"- `{path}`" for path in changeset.paths)
    return "\n".join(lines) + "\n"


def _is_ignored(path: str, extra: Iterable[str] = ()) -> bool:
    """``extra`` holds work-dir relative directories (dist dir, cache root)."""
    rel = Path(path)
    parts = rel.parts
    if not parts:
        return False
    if parts[0] in IGNORED_ROOT_DIRS:
        return True
    if any(fnmatch.fnmatch(part, pattern) for part in parts for pattern in IGNORED_ANYWHERE):
        return True
    posix = rel.as_posix()
    return any(posix == prefix or posix.startswith(prefix + "/") for prefix in extra)


def _work_relative(path: Path, work_dir: Path) -> str | None:
    if not path.is_absolute():
        return path.as_posix()
    try:
        return path.resolve().relative_to(work_dir.resolve()).as_posix()
    except ValueError:
        return None


def parse_porcelain(output: str) -> list[str]:
    """Paths from ``git status --porcelain -z`` output.

    Renames and copies carry the original path as an extra NUL-separated field,
    which is skipped.
    """
    paths = []
    entries = iter(output.split("\0"))
    for entry in entries:
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        paths.append(path)
        if status[0] in "RC":
            next(entries, None)
    return paths


class GitClient:
    """git / gh CLI の薄いラッパ.

    Args:
        runner: 外部コマンド実行（テストではフェイクに差し替える）
        cwd: リポジトリのチェックアウト先
        remote: push / ls-remote 先のリモート名
    """

    def __init__(self, runner: CommandRunner, cwd: Path, remote: str = "origin") -> None:
        self.runner = runner
        self.cwd = cwd
        self.remote = remote

    def _git(self, *args: str) -> str:
        return self.runner.run(["git", *args], cwd=self.cwd).check().stdout

    def changed_files(self, ignore: Iterable[str] = ()) -> ChangeSet:
        output = self._git("status", "--porcelain", "-z", "--untracked-files=all")
        ignore = tuple(ignore)
        return ChangeSet.of(p for p in parse_porcelain(output) if not _is_ignored(p, ignore))

    def current_branch(self) -> str | None:
        """None when HEAD is detached."""
        result = self.runner.run(["git", "symbolic-ref", "--quiet", "--short", "HEAD"], cwd=self.cwd)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def head_sha(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def remote_branch_exists(self, branch: str) -> bool:
        """Exact ``refs/heads/<branch>`` lookup.

        A bare name would also match ``refs/heads/*/<branch>``.
        ``git ls-remote --exit-code`` exits 2 when no ref matched.
        """
        result = self.runner.run(
            ["git", "ls-remote", "--exit-code", "--heads", self.remote, f"refs/heads/{branch}"],
            cwd=self.cwd,
        )
        if result.returncode == 2:
            return False
        result.check()
        return True

    def has_write_access(self, branch: str) -> bool:
        result = self.runner.run(
            ["git", "push", "--dry-run", self.remote, f"HEAD:refs/heads/{branch}"],
            cwd=self.cwd,
        )
        if not result.ok:
            logger.info(f"No direct push access to {self.remote}/{branch}: {result.stderr.strip()}")
        return result.ok

    def align_to_branch(self, branch: str, changeset: ChangeSet) -> None:
        """Move HEAD to the remote tip of ``branch`` keeping the changed files.

        Used when the checkout is detached (e.g. a PR merge ref) so the commit's
        parent is the branch head rather than the synthetic merge commit.
        """
        snapshot: dict[str, bytes | None] = {}
        for path in changeset.paths:
            full = self.cwd / path
            snapshot[path] = full.read_bytes() if full.is_file() else None

        self._git("fetch", "--no-tags", self.remote, f"refs/heads/{branch}")
        self._git("checkout", "--force", "-B", branch, "FETCH_HEAD")

        for path, content in snapshot.items():
            full = self.cwd / path
            if content is None:
                if full.is_file():
                    full.unlink()
                continue
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_bytes(content)
        logger.info(f"Moved {len(snapshot)} changed files onto {self.remote}/{branch}")

    def _identity_args(self) -> list[str]:
        result = self.runner.run(["git", "config", "user.email"], cwd=self.cwd)
        if result.ok and result.stdout.strip():
            return []
        return ["-c", f"user.name={BOT_NAME}", "-c", f"user.email={BOT_EMAIL}"]

    def commit(self, changeset: ChangeSet, message: str) -> None:
        self._git("add", "--all", "--", *changeset.paths)
        self._git(*self._identity_args(), "commit", "-m", message)

    def create_branch(self, name: str) -> None:
        self._git("checkout", "-b", name)

    def push(self, branch: str) -> None:
        self._git("push", self.remote, f"HEAD:refs/heads/{branch}")

    def open_pull_request(self, base: str, head: str, title: str, body: str) -> str:
        result = self.runner.run(
            ["gh", "pr", "create", "--base", base, "--head", head, "--title", title, "--body", body],
            cwd=self.cwd,
        ).check()
        return result.stdout.strip()


def resolve_target_branch(
    config: BuildConfig,
    git: GitClient,
    environ: Mapping[str, str] | None = None,
) -> str | None:
    environ = os.environ if environ is None else environ
    return (
        config.target_branch
        or environ.get("GITHUB_HEAD_REF")
        or environ.get("GITHUB_REF_NAME")
        or git.current_branch()
    )


def reconcile(
    config: BuildConfig,
    git: GitClient,
    environ: Mapping[str, str] | None = None,
) -> ReconcileResult:
    """Commit or propose the source changes left behind by the build.

    Returns:
        ReconcileResult（終端状態と遷移履歴）

    Raises:
        PreconditionError: 変更があるのに対象ブランチを特定できない場合
        ExternalToolError: git / gh の失敗（ブランチ消失以外はすべて致命的）
    """
    if not config.push_source:
        logger.info("push-source is disabled; skipping reconciliation")
        return ReconcileResult(state=ReconcileState.NO_CHANGE, history=(ReconcileState.NO_CHANGE,))

    ignore = tuple(
        rel
        for rel in (
            _work_relative(config.dist_dir, config.work_dir),
            _work_relative(config.cache_dir, config.work_dir),
        )
        if rel
    )

    history = [ReconcileState.CLEAN]
    if config.normalize_source:
        # only what the build touched; committed sources stay as they are
        touched = git.changed_files(ignore=ignore)
        normalize_paths(config.work_dir, touched.paths, config.normalize_patterns)
        history.append(ReconcileState.NORMALIZED)

    changeset = git.changed_files(ignore=ignore)
    history.append(ReconcileState.DIFF_CHECKED)
    logger.info(f"Detected {len(changeset)} changed files")

    branch = None
    branch_exists = False
    write_access = False
    if changeset:
        branch = resolve_target_branch(config, git, environ)
        if not branch:
            raise PreconditionError("Cannot determine the branch to push generated sources to")
        branch_exists = git.remote_branch_exists(branch)
        if branch_exists:
            if git.current_branch() != branch:
                git.align_to_branch(branch, changeset)
                changeset = git.changed_files(ignore=ignore)
            write_access = git.has_write_access(branch)

    state = decide_outcome(not changeset, branch_exists, write_access)
    history.append(state)
    pr_url = None

    if state is ReconcileState.NO_CHANGE:
        logger.info("No source changes to commit")
    elif state is ReconcileState.BRANCH_GONE:
        logger.warning(f"Branch {branch} no longer exists on {git.remote}; nothing to push")
    elif state is ReconcileState.DIRECT_PUSH:
        git.commit(changeset, config.commit_message)
        git.push(branch)
        logger.info(f"Pushed {len(changeset)} files to {git.remote}/{branch}")
    else:
        pr_branch = f"{PR_BRANCH_PREFIX}/{branch}-{git.head_sha()[:8]}"
        git.create_branch(pr_branch)
        git.commit(changeset, config.commit_message)
        git.push(pr_branch)
        body = build_pr_body(config.commit_message, config.trigger, changeset)
        try:
            pr_url = git.open_pull_request(branch, pr_branch, config.commit_message, body)
        except ExternalToolError:
            logger.error(f"Failed to open pull request from {pr_branch} into {branch}")
            raise
        logger.info(f"Opened pull request: {pr_url}")

    return ReconcileResult(
        state=state,
        changeset=changeset,
        branch=branch,
        pr_url=pr_url,
        history=tuple(history),
    )
