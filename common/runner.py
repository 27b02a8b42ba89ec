from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass

_LOG = logging.getLogger("common.runner")

EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126


@dataclass(frozen=True, slots=True)
class CommandResult:
    stdout: bytes
    stderr: bytes
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")


class CommandRunner:
    """One-shot synchronous command execution used for probes."""

    def __init__(self, default_timeout: float | None = 30.0):
        self.default_timeout = default_timeout

    def run(self, command: str, args: list[str] | None = None, timeout: float | None = None) -> CommandResult:
        argv = [command, *(args or [])]
        limit = self.default_timeout if timeout is None else timeout
        try:
            proc = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=limit,
                check=False,
            )
        except FileNotFoundError as exc:
            _LOG.debug("command not found cmd=%s", command)
            return CommandResult(b"", str(exc).encode("utf-8"), EXIT_NOT_FOUND)
        except PermissionError as exc:
            _LOG.debug("command not executable cmd=%s", command)
            return CommandResult(b"", str(exc).encode("utf-8"), EXIT_NOT_EXECUTABLE)
        except subprocess.TimeoutExpired as exc:
            _LOG.warning("command timed out cmd=%s timeout=%s", command, limit)
            return CommandResult(exc.stdout or b"", exc.stderr or b"timed out", -1)
        return CommandResult(proc.stdout, proc.stderr, proc.returncode)
