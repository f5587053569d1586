from __future__ import annotations

from pathlib import Path
from typing import Callable, Mapping, Sequence

import pytest

from cached_wheel_builder.runner import CommandResult

Handler = Callable[[list[str], Path | None, Mapping[str, str] | None], CommandResult | None]


class FakeRunner:
    """Records every command; answers from registered handlers or succeeds empty.

    Handlers are matched by command prefix, most recently registered first.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.envs: list[dict[str, str]] = []
        self._handlers: list[tuple[tuple[str, ...], Handler]] = []

    def on(self, prefix: Sequence[str], handler: Handler | CommandResult | int | str) -> None:
        if isinstance(handler, CommandResult):
            result = handler
            handler = lambda args, cwd, env: result  # noqa: E731
        elif isinstance(handler, int):
            code = handler
            handler = lambda args, cwd, env: CommandResult(tuple(args), code, "", "boom")  # noqa: E731
        elif isinstance(handler, str):
            out = handler
            handler = lambda args, cwd, env: CommandResult(tuple(args), 0, out, "")  # noqa: E731
        self._handlers.insert(0, (tuple(prefix), handler))

    def run(self, args, cwd=None, env=None) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        self.envs.append(dict(env or {}))
        for prefix, handler in self._handlers:
            if tuple(args[: len(prefix)]) == prefix:
                result = handler(args, cwd, env)
                if result is not None:
                    return result
        return CommandResult(tuple(args), 0, "", "")

    def called(self, *prefix: str) -> list[list[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()
