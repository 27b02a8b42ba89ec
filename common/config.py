from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


REQUIRED_KEYS = ("bind", "port", "state_dir")


def load_yaml(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"config file does not exist: {path}")
    with p.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"config file is not valid YAML: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    return data


def require_keys(cfg: dict[str, Any], keys: list[str], where: str = "config") -> None:
    missing = [k for k in keys if k not in cfg]
    if missing:
        raise ConfigError(f"{where} missing required keys: {', '.join(missing)}")


def load_example_defaults(config_path: str, example_name: str = "panel.example.yaml") -> dict[str, Any]:
    example_path = Path(config_path).resolve().with_name(example_name)
    if not example_path.is_file():
        example_path = Path(__file__).resolve().parents[1] / example_name
    try:
        return load_yaml(str(example_path))
    except ConfigError:
        return {}


def merge_config(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(defaults)
    for key, value in overrides.items():
        base = merged.get(key)
        if isinstance(base, dict) and isinstance(value, dict):
            merged[key] = merge_config(base, value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str) -> dict[str, Any]:
    cfg = merge_config(load_example_defaults(config_path), load_yaml(config_path))
    require_keys(cfg, list(REQUIRED_KEYS))
    auth = cfg.get("auth")
    if not isinstance(auth, dict):
        auth = {}
        cfg["auth"] = auth
    secret = os.environ.get("JWT_SECRET", "").strip()
    if secret:
        auth["jwt_secret"] = secret
    for key in ("grace_period_seconds", "sse_keepalive_seconds", "shutdown_force_exit_seconds"):
        if key in cfg:
            try:
                cfg[key] = float(cfg[key])
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"{key} must be a number") from exc
    return cfg
