"""GitHub Actions step outputs."""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Mapping

from loguru import logger


def format_output(name: str, value: str) -> str:
    if "\n" in value:
        delimiter = f"ghadelimiter_{uuid.uuid4().hex}"
        return f"{name}<<{delimiter}\n{value}\n{delimiter}\n"
    return f"{name}={value}\n"


def write_step_outputs(
    outputs: Mapping[str, str],
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Append outputs to ``$GITHUB_OUTPUT``; only log them when it is unset."""
    if path is None:
        environ = os.environ if environ is None else environ
        env_path = environ.get("GITHUB_OUTPUT")
        path = Path(env_path) if env_path else None

    if path is None:
        for name, value in outputs.items():
            logger.info(f"output {name}={value}")
        return

    with open(path, "a", encoding="utf-8") as f:
        for name, value in outputs.items():
            f.write(format_output(name, value))
    logger.info(f"Wrote {len(outputs)} step outputs to {path}")
