"""Configuration file loading and merging for ponder.

Reads TOML config from ~/.config/ponder/config.toml (global) and
<base_dir>/ponder.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

logger = logging.getLogger(__name__)

_UNSET = object()  # flag left alone on the command line


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_steps": int,
    "max_consecutive_errors": int,
    "mode": str,
    "shell_timeout_ms": int,
    "max_file_size_mb": (int, float),
    "search_results_limit": int,
    "enable_background_tasks": bool,
    "cache_ttl": (int, float),
    "cache_size": int,
    "mode_cache_size": int,
    "log_level": str,
    "yolo": bool,
    "color": bool,
    "quiet": bool,
}

_CHOICES: dict[str, tuple[str, ...]] = {
    "provider": ("zhipu", "openai", "anthropic", "lmstudio"),
    "mode": ("auto", "react", "direct"),
    "log_level": ("debug", "info", "warning", "error"),
}

_POSITIVE_KEYS = {
    "max_output_tokens",
    "max_steps",
    "max_consecutive_errors",
    "shell_timeout_ms",
    "max_file_size_mb",
    "search_results_limit",
    "cache_size",
    "mode_cache_size",
}

# Built-in defaults, applied after CLI and config files
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "zhipu",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 4000,
    "temperature": 0.7,
    "max_steps": 10,
    "max_consecutive_errors": 3,
    "mode": "auto",
    "shell_timeout_ms": 120_000,
    "max_file_size_mb": 10,
    "search_results_limit": 100,
    "enable_background_tasks": True,
    "cache_ttl": 300,
    "cache_size": 100,
    "mode_cache_size": 100,
    "log_level": "warning",
    "yolo": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Validation ---


def global_config_dir() -> Path:
    """Directory holding the user-wide config.toml ($XDG_CONFIG_HOME/ponder or ~/.config/ponder)."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "ponder"
    return Path.home() / ".config" / "ponder"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for mismatches. Logs a warning for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            logger.warning("%s: unknown config key %r", source, key)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for numeric fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _CHOICES and value not in _CHOICES[key]:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(_CHOICES[key])}, got {value!r}"
            )
        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")
        if key == "cache_ttl" and value < 0:
            raise ConfigError(f"{source}: 'cache_ttl' must not be negative")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Log a warning when a project file inside a git checkout carries an api_key."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            logger.warning(
                "%s: 'api_key' in a git-tracked project config may be committed "
                "accidentally. Consider using an environment variable.",
                config_path,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Parse one TOML file into a validated dict of known keys ({} when the file is absent)."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Merge the user-wide config with the project ponder.toml (project wins).

    Returns a flat dict holding only keys that were actually set in a
    config file; defaults are applied later by apply_config_to_args().
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "ponder.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, then from defaults."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # One config key drives the --color / --no-color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key != "color" and _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    # Config files were checked on load; flags arrive here unchecked.
    for key in sorted(_POSITIVE_KEYS):
        value = getattr(args, key, None)
        if isinstance(value, (int, float)) and value <= 0:
            flag = "--" + key.replace("_", "-")
            raise ConfigError(f"{flag} must be positive, got {value}")


def args_to_agent_kwargs(args: argparse.Namespace) -> dict:
    """Pick the Agent constructor arguments out of a resolved namespace."""
    keys = (
        "provider",
        "model",
        "api_key",
        "base_url",
        "max_output_tokens",
        "temperature",
        "max_steps",
        "max_consecutive_errors",
        "mode",
        "shell_timeout_ms",
        "max_file_size_mb",
        "search_results_limit",
        "enable_background_tasks",
        "cache_ttl",
        "cache_size",
        "mode_cache_size",
        "yolo",
    )
    kwargs = {k: getattr(args, k) for k in keys if hasattr(args, k)}
    kwargs["verbose"] = not getattr(args, "quiet", False)
    return kwargs


def generate_config(project: bool = False) -> str:
    """Config template with every key commented out, for --init-config."""
    where = "<project>/ponder.toml" if project else "~/.config/ponder/config.toml"
    lines = [
        "# ponder configuration file",
        f"# {'Project' if project else 'Global'} config: {where}",
        "#",
        "# Command-line flags win over anything set here.",
        "",
        "# --- Model ---",
        '# provider = "zhipu"            # "zhipu" | "openai" | "anthropic" | "lmstudio"',
        '# model = "glm-4"',
        '# api_key = "..."               # prefer ZHIPU_API_KEY / OPENAI_API_KEY / ANTHROPIC_API_KEY',
        '# base_url = "https://..."',
        "",
        "# --- Sampling ---",
        "# max_output_tokens = 4000",
        "# temperature = 0.7",
        "",
        "# --- Reasoning loop ---",
        '# mode = "auto"                 # "auto" | "react" | "direct"',
        "# max_steps = 10",
        "# max_consecutive_errors = 3",
        "# cache_ttl = 300               # seconds",
        "# cache_size = 100",
        "# mode_cache_size = 100",
        "",
        "# --- Tools ---",
        "# shell_timeout_ms = 120000",
        "# max_file_size_mb = 10",
        "# search_results_limit = 100",
        "# enable_background_tasks = true",
        "# yolo = false                  # allow paths outside the base directory",
        "",
        "# --- UI ---",
        "# color = true                 # true forces color, false disables it, unset = auto-detect",
        "# quiet = false",
        '# log_level = "warning"',
        "",
    ]
    return "\n".join(lines)
