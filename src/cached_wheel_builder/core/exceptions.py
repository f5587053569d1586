"""Wheel build orchestrator exceptions.

Precondition violations, external tool failures and cache store errors are all
fatal. Expected empty results (no changes, branch deleted) are not exceptions.
"""

from __future__ import annotations


class ActionError(Exception):
    """Base class for every fatal error raised by the orchestrator."""


class PreconditionError(ActionError):
    """Invalid configuration or environment detected before any side effect."""


class HashInputError(PreconditionError):
    """A file matched by a hash-key glob could not be read.

    Attributes:
        path: 読み取れなかったファイルのパス
    """

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read hash input {path}: {reason}")


class ExternalToolError(ActionError):
    """An external command exited non-zero.

    The tool's own diagnostic output is kept verbatim so the caller can surface it.

    Attributes:
        args: 実行したコマンド
        returncode: 終了コード
        stdout: 標準出力
        stderr: 標準エラー出力
    """

    def __init__(
        self,
        args: list[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.args_list = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"Command failed with exit code {returncode}: {' '.join(self.args_list)}"
        diagnostic = (stderr or stdout).strip()
        if diagnostic:
            message = f"{message}\n{diagnostic}"
        super().__init__(message)


class CacheStoreError(ActionError):
    """The cache store could not read or write an entry."""
