from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any

DEFAULT_LOG_FILES: dict[str, list[str]] = {
    "nginx-access": [
        "/opt/homebrew/var/log/nginx/access.log",
        "/usr/local/var/log/nginx/access.log",
        "/var/log/nginx/access.log",
    ],
    "nginx-error": [
        "/opt/homebrew/var/log/nginx/error.log",
        "/usr/local/var/log/nginx/error.log",
        "/var/log/nginx/error.log",
    ],
    "apache-access": [
        "/opt/homebrew/var/log/httpd/access_log",
        "/usr/local/var/log/httpd/access_log",
        "/var/log/apache2/access.log",
        "/var/log/httpd/access_log",
    ],
    "apache-error": [
        "/opt/homebrew/var/log/httpd/error_log",
        "/usr/local/var/log/httpd/error_log",
        "/var/log/apache2/error.log",
        "/var/log/httpd/error_log",
    ],
    "cloudflared": [
        "/opt/homebrew/var/log/cloudflared.log",
        "/usr/local/var/log/cloudflared.log",
        "/var/log/cloudflared.log",
        "/tmp/cloudflared.log",
    ],
}

_UNIT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9@._:*\-]{0,127}$")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-]{0,63}$")
_PM2_RE = re.compile(r"^(all|[A-Za-z0-9][A-Za-z0-9._\-]{0,63})$")


@dataclass(frozen=True, slots=True)
class LaunchPlan:
    target: str
    source: str
    command: str = ""
    args: tuple[str, ...] = ()
    notices: tuple[str, ...] = ()
    error: str | None = None


@dataclass(slots=True)
class LogSourceCatalog:
    """Resolves target descriptors (``scheme:name``) into launch plans."""

    log_files: dict[str, list[str]] = field(default_factory=lambda: dict(DEFAULT_LOG_FILES))
    history_lines: int = 100
    journalctl: str = "journalctl"
    tail: str = "tail"
    pm2: str = "pm2"

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> "LogSourceCatalog":
        files = dict(DEFAULT_LOG_FILES)
        extra = cfg.get("log_files") or {}
        if not isinstance(extra, dict):
            raise ValueError("log_files must be a mapping of name -> candidate paths")
        for name, paths in extra.items():
            if isinstance(paths, str):
                paths = [paths]
            files[str(name)] = [str(p) for p in paths]
        return cls(
            log_files=files,
            history_lines=int(cfg.get("source_history_lines", 100)),
            journalctl=str(cfg.get("journalctl_bin", "journalctl")),
            tail=str(cfg.get("tail_bin", "tail")),
            pm2=str(cfg.get("pm2_bin", "pm2")),
        )

    def targets(self) -> list[str]:
        return [f"file:{name}" for name in sorted(self.log_files)]

    def resolve(self, target: str) -> LaunchPlan:
        scheme, sep, name = target.partition(":")
        if not sep or not name:
            raise ValueError(f"invalid target descriptor: {target!r}")
        if scheme == "journal":
            return self._journal(target, name)
        if scheme == "file":
            return self._file(target, name)
        if scheme == "pm2":
            return self._pm2(target, name)
        raise ValueError(f"unknown log source scheme: {scheme!r}")

    def _journal(self, target: str, unit: str) -> LaunchPlan:
        if not _UNIT_RE.match(unit):
            raise ValueError(f"invalid unit name: {unit!r}")
        args = ["--no-pager", "-f", "-n", str(self.history_lines), "-o", "json", "-u", unit]
        return LaunchPlan(target=target, source=unit, command=self.journalctl, args=tuple(args))

    def _file(self, target: str, name: str) -> LaunchPlan:
        if not _NAME_RE.match(name):
            raise ValueError(f"invalid log file name: {name!r}")
        candidates = self.log_files.get(name)
        if candidates is None:
            raise ValueError(f"unknown log file: {name!r}")
        path = next((p for p in candidates if os.path.isfile(p)), None)
        if path is None:
            return LaunchPlan(
                target=target,
                source=name,
                error="Log file not found. Checked: " + ", ".join(candidates),
            )
        return LaunchPlan(
            target=target,
            source=name,
            command=self.tail,
            args=("-F", "-n", str(self.history_lines), path),
            notices=(f"Streaming logs from {path}",),
        )

    def _pm2(self, target: str, ident: str) -> LaunchPlan:
        if not _PM2_RE.match(ident):
            raise ValueError(f"invalid pm2 process id: {ident!r}")
        lines = 15 if ident == "all" else 50
        args: list[str] = ["logs"]
        if ident != "all":
            args.append(ident)
        args += ["--raw", "--lines", str(lines)]
        return LaunchPlan(target=target, source=f"pm2-{ident}", command=self.pm2, args=tuple(args))
