"""Subprocess helpers shared by the providers."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any


def elevation_prefix(sudo_bin: str = "sudo") -> tuple[str, ...]:
    """Return the command prefix used for privileged steps.

    Root needs no prefix. Everyone else goes through non-interactive ``sudo``
    so a missing rule fails fast instead of hanging on a password prompt.
    """
    if os.geteuid() == 0:
        return ()
    return (sudo_bin, "-n")


def run_command(
    args: Sequence[str],
    *,
    error: type[RuntimeError],
    error_prefix: str | None = None,
    check: bool = True,
    input_text: str | None = None,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    text: bool = True,
    stdout: Any = None,
) -> subprocess.CompletedProcess[Any]:
    """Run *args* and raise *error* with a readable message on failure.

    ``stdout`` may be an open file handle; output then streams there and
    only stderr is captured.
    """
    command = [str(item) for item in args]
    prefix = error_prefix or " ".join(command[:2])
    merged_env: dict[str, str] | None = None
    if env is not None:
        merged_env = os.environ.copy()
        merged_env.update(env)
    try:
        result = subprocess.run(  # noqa: S603, S607
            command,
            input=input_text,
            stdout=stdout if stdout is not None else subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=text,
            check=False,
            timeout=timeout,
            env=merged_env,
            cwd=str(cwd) if cwd is not None else None,
        )
    except FileNotFoundError as exc:
        raise error(f"{command[0]} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise error(f"{prefix} timed out after {timeout}s") from exc
    if check and result.returncode != 0:
        message = _output_text(result.stderr) or _output_text(result.stdout) or "no output"
        raise error(f"{prefix} failed (exit {result.returncode}): {message}")
    return result


def _output_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace").strip()
    return str(value).strip()


__all__ = ["elevation_prefix", "run_command"]
