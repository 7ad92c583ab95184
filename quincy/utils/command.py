"""Starting external programs with piped standard streams."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Iterable


class CommandError(RuntimeError):
    """Raised when an external program cannot be started."""


def run_command(
    program: str, arguments: Iterable[str | os.PathLike[str]]
) -> subprocess.Popen[bytes]:
    """Start a program with stdin, stdout and stderr piped."""
    argv = [program, *(os.fspath(argument) for argument in arguments)]
    try:
        return subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise CommandError(f"failed to execute command: {exc}") from exc