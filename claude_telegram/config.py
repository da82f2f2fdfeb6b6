"""Configuration loading: YAML file + ${VAR} interpolation + env overrides."""

from __future__ import annotations

import copy
import os
import re
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

DEFAULT_CONFIG_FILE = Path("claude-telegram.yaml")

PERMISSION_MODES = ("default", "acceptEdits", "bypassPermissions", "plan")

DEFAULTS: dict[str, Any] = {
    "token": "",
    "workspace": "",
    "whitelist": [],
    "permission_mode": "acceptEdits",
    "claude_path": "claude",
    "timeout": 300,
    "model": None,
    "system_prompt": None,
    "add_dirs": [],
    "hooks": [],
    "kill_grace": 5,
    "shutdown_timeout": 30,
    "poll_timeout": 30,
    "data_dir": None,
}

_ENV_MAP = {
    "CLAUDE_TELEGRAM_TOKEN": "token",
    "CLAUDE_TELEGRAM_WORKSPACE": "workspace",
    "CLAUDE_TELEGRAM_CLAUDE_PATH": "claude_path",
    "CLAUDE_TELEGRAM_TIMEOUT": "timeout",
    "CLAUDE_TELEGRAM_PERMISSION_MODE": "permission_mode",
    "CLAUDE_TELEGRAM_DATA_DIR": "data_dir",
}

_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


class Config:
    """Merged configuration from YAML + env vars.

    Relative paths (``workspace``, ``add_dirs``, ``data_dir``) are resolved
    against the directory holding the config file.
    """

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path else DEFAULT_CONFIG_FILE
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self):
        merged = copy.deepcopy(DEFAULTS)

        if self._path.exists():
            try:
                with open(self._path) as f:
                    file_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {self._path}", detail=str(exc)) from exc
            if not isinstance(file_data, dict):
                raise ConfigError(f"Config file {self._path} must contain a mapping")
            merged.update(_interpolate(file_data))

        for env_key, key in _ENV_MAP.items():
            val = os.environ.get(env_key)
            if val is not None:
                merged[key] = _coerce(val)

        self._data = merged

    # -- Accessors --

    @property
    def path(self) -> Path:
        return self._path

    @property
    def base_dir(self) -> Path:
        return self._path.expanduser().resolve().parent

    @property
    def token(self) -> str:
        return str(self._data["token"] or "")

    @property
    def workspace(self) -> Path:
        return self._resolve(self._data["workspace"] or ".")

    @property
    def whitelist(self) -> list[int]:
        return [int(uid) for uid in self._data["whitelist"] or []]

    @property
    def permission_mode(self) -> str:
        return self._data["permission_mode"]

    @property
    def claude_path(self) -> str:
        return self._data["claude_path"]

    @property
    def timeout(self) -> float:
        return float(self._data["timeout"])

    @property
    def model(self) -> str | None:
        return self._data["model"] or None

    @property
    def system_prompt(self) -> str | None:
        return self._data["system_prompt"] or None

    @property
    def add_dirs(self) -> list[Path]:
        return [self._resolve(d) for d in self._data["add_dirs"] or []]

    @property
    def hooks(self) -> list[Any]:
        return list(self._data["hooks"] or [])

    @property
    def kill_grace(self) -> float:
        return float(self._data["kill_grace"])

    @property
    def shutdown_timeout(self) -> float:
        return float(self._data["shutdown_timeout"])

    @property
    def poll_timeout(self) -> int:
        return int(self._data["poll_timeout"])

    @property
    def data_dir(self) -> Path:
        if self._data["data_dir"]:
            return self._resolve(self._data["data_dir"])
        return self.workspace / ".claude-telegram"

    @property
    def sessions_file(self) -> Path:
        return self.data_dir / "sessions.json"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    def validate(self) -> list[str]:
        """Return list of validation errors, empty if config is valid."""
        errors = []
        if not self.token:
            errors.append("token is required")
        if not self._data["workspace"]:
            errors.append("workspace is required")
        elif not self.workspace.is_dir():
            errors.append(f"workspace directory does not exist: {self.workspace}")
        if self.permission_mode not in PERMISSION_MODES:
            errors.append(
                f"permission_mode must be one of {', '.join(PERMISSION_MODES)}"
            )
        if not self.claude_path:
            errors.append("claude_path is required")
        try:
            if self.timeout <= 0:
                errors.append("timeout must be positive")
        except (TypeError, ValueError):
            errors.append("timeout must be a number")
        try:
            self.whitelist
        except (TypeError, ValueError):
            errors.append("whitelist must be a list of numeric user ids")
        return errors

    def _resolve(self, value: str | Path) -> Path:
        p = Path(value).expanduser()
        if not p.is_absolute():
            p = self.base_dir / p
        return p.resolve()


def _interpolate(obj: Any) -> Any:
    """Replace ${VAR} references in every string value."""
    if isinstance(obj, str):
        def _sub(m: re.Match) -> str:
            name = m.group(1)
            val = os.environ.get(name)
            if val is None:
                raise ConfigError(f"Environment variable {name} is not set")
            return val
        return _VAR_PATTERN.sub(_sub, obj)
    if isinstance(obj, list):
        return [_interpolate(v) for v in obj]
    if isinstance(obj, dict):
        return {k: _interpolate(v) for k, v in obj.items()}
    return obj


def _coerce(val: str):
    """Try to coerce string env var to int/bool."""
    if val.isdigit():
        return int(val)
    if val.lower() in ("true", "false"):
        return val.lower() == "true"
    return val
