"""
Runtime configuration for procshell.

Two concerns live here:
- executable path overrides, so tests and scripts can point a command name
  (e.g. ``fzf``) at a stand-in executable;
- process-wide settings (kill grace period, output encoding), which can come
  from the environment or from a YAML file.
"""

import logging
import os
import threading
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .exceptions import ConfigValidationError, SpecViolation


logger = logging.getLogger(__name__)

ENV_KILL_GRACE = "PROCSHELL_KILL_GRACE_SEC"
ENV_ENCODING = "PROCSHELL_ENCODING"


@dataclass(frozen=True)
class Settings:
    """
    Process-wide execution settings.

    Attributes:
        kill_grace_sec: Seconds between terminate() and kill() on cancellation
        encoding: Encoding used to decode captured output lines
    """
    kill_grace_sec: float = 2.0
    encoding: str = "utf-8"


_lock = threading.Lock()
_command_paths: Dict[str, str] = {}
_settings: Optional[Settings] = None


def set_command_path(command: str, path: Union[str, Path]) -> None:
    """
    Point ``command`` at a specific executable.

    Raises:
        FileNotFoundError: If ``path`` does not exist
        IsADirectoryError: If ``path`` is a directory
    """
    if not command:
        raise ValueError("command must be a non-empty string")

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"The specified executable path does not exist: {path}")
    if path.is_dir():
        raise IsADirectoryError(f"The specified path is a directory, not an executable file: {path}")

    with _lock:
        _command_paths[command] = str(path)
    logger.debug(f"Command path override: {command} -> {path}")


def clear_command_path(command: str) -> None:
    """Remove the override for ``command``, if any."""
    with _lock:
        _command_paths.pop(command, None)


def get_command_path(command: str) -> str:
    """Return the override for ``command``, or ``command`` itself."""
    with _lock:
        return _command_paths.get(command, command)


def has_custom_path(command: str) -> bool:
    with _lock:
        return command in _command_paths


def all_command_paths() -> Dict[str, str]:
    """Snapshot of every configured override."""
    with _lock:
        return dict(_command_paths)


def settings_from_env() -> Settings:
    """Build settings from PROCSHELL_* environment variables."""
    settings = Settings()

    grace = os.environ.get(ENV_KILL_GRACE)
    if grace:
        try:
            settings = replace(settings, kill_grace_sec=float(grace))
        except ValueError:
            logger.warning(f"Ignoring invalid {ENV_KILL_GRACE}={grace!r}")

    encoding = os.environ.get(ENV_ENCODING)
    if encoding:
        settings = replace(settings, encoding=encoding)

    return settings


def get_settings() -> Settings:
    """Current settings; read from the environment on first use."""
    global _settings
    with _lock:
        if _settings is None:
            _settings = settings_from_env()
        return _settings


def configure(**overrides: Any) -> Settings:
    """Replace individual settings, e.g. ``configure(kill_grace_sec=0.5)``."""
    global _settings
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(unknown)}")

    current = get_settings()
    with _lock:
        _settings = replace(current, **overrides)
        return _settings


def reset() -> None:
    """Clear every command path override and forget cached settings."""
    global _settings
    with _lock:
        _command_paths.clear()
        _settings = None


def load_config(config_path: Union[str, Path]) -> Settings:
    """
    Load settings and command path overrides from a YAML file.

    Expected layout::

        settings:
          kill_grace_sec: 0.5
          encoding: utf-8
        command_paths:
          fzf: /opt/bin/fzf

    Returns:
        The settings now in effect

    Raises:
        ConfigValidationError: If the file is unreadable or malformed
    """
    errors: List[SpecViolation] = []

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigValidationError([SpecViolation(f"Failed to load config: {e}")]) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigValidationError([SpecViolation("Config must be a YAML mapping")])

    unknown_keys = set(data) - {"settings", "command_paths"}
    for key in sorted(unknown_keys):
        errors.append(SpecViolation(f"Unknown top-level key '{key}'", field=key))

    settings_data = data.get("settings") or {}
    overrides: Dict[str, Any] = {}
    if not isinstance(settings_data, dict):
        errors.append(SpecViolation("'settings' must be a mapping", field="settings"))
    else:
        if "kill_grace_sec" in settings_data:
            value = settings_data["kill_grace_sec"]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                errors.append(SpecViolation(
                    "'kill_grace_sec' must be a non-negative number", field="settings.kill_grace_sec"
                ))
            else:
                overrides["kill_grace_sec"] = float(value)
        if "encoding" in settings_data:
            value = settings_data["encoding"]
            if not isinstance(value, str) or not value:
                errors.append(SpecViolation("'encoding' must be a string", field="settings.encoding"))
            else:
                overrides["encoding"] = value
        for key in sorted(set(settings_data) - {"kill_grace_sec", "encoding"}):
            errors.append(SpecViolation(f"Unknown setting '{key}'", field=f"settings.{key}"))

    command_paths = data.get("command_paths") or {}
    if not isinstance(command_paths, dict):
        errors.append(SpecViolation("'command_paths' must be a mapping", field="command_paths"))
        command_paths = {}

    if errors:
        raise ConfigValidationError(errors)

    # Paths are validated by set_command_path; collect failures instead of stopping at the first
    for command, path in command_paths.items():
        try:
            set_command_path(str(command), str(path))
        except (OSError, ValueError) as e:
            errors.append(SpecViolation(str(e), field=f"command_paths.{command}"))
    if errors:
        raise ConfigValidationError(errors)

    logger.debug(f"Loaded config from {config_path}")
    return configure(**overrides)
