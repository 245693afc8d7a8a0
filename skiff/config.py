"""Configuration file loading and merging for skiff.

Reads TOML config from ~/.config/skiff/config.toml (global) and
<base_dir>/skiff.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

PROVIDERS = ("xai", "openrouter", "lmstudio")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "max_context_tokens": int,
    "temperature": (int, float),
    "max_turns": int,
    "system_prompt": str,
    "no_system_prompt": bool,
    "auto_approve": list,
    "safe_command_classes": list,
    "allowed_dirs": list,
    "stream": bool,
    "compact_keep": int,
    "no_history": bool,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"auto_approve", "safe_command_classes", "allowed_dirs"}

_POSITIVE_INT_KEYS = {"max_output_tokens", "max_context_tokens", "max_turns", "compact_keep"}

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "allowed_dirs": "allow_dir",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "xai",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 16384,
    "max_context_tokens": 131072,
    "temperature": 0.7,
    "max_turns": 100,
    "system_prompt": None,
    "no_system_prompt": False,
    "auto_approve": [],
    "safe_command_classes": ["git", "npm", "ls"],
    "allow_dir": [],
    "stream": True,
    "compact_keep": 20,
    "no_history": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "skiff"
    return Path.home() / ".config" / "skiff"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and mutual exclusions in a parsed config dict.

    Raises ConfigError for type mismatches or invalid combinations.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # isinstance(True, int) is True; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )
        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: unknown provider {config['provider']!r} "
            f"(expected one of: {', '.join(PROVIDERS)})"
        )

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative allowed_dirs against the config file's directory.

    expanduser() runs before the is_absolute() check so ~/... paths expand to
    the home directory instead of becoming <config_dir>/~/...
    """
    if "allowed_dirs" in config:
        resolved = []
        for p in config["allowed_dirs"]:
            expanded = Path(p).expanduser()
            if expanded.is_absolute():
                resolved.append(str(expanded))
            else:
                resolved.append(str(config_dir / p))
        config["allowed_dirs"] = resolved


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
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
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "skiff.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    merged = {**global_config, **project_config}

    # Each file can be valid alone and still conflict once merged.
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, remaining _UNSET sentinels are
    replaced with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """
    # Append actions can't use _UNSET as their default
    _NONE_SENTINEL_DESTS = {"allow_dir", "auto_approve"}

    def _is_unset(dest: str) -> bool:
        val = getattr(args, dest, _UNSET)
        if dest in _NONE_SENTINEL_DESTS:
            return val is None
        return val is _UNSET

    # A single config key controls the mutually exclusive --color/--no-color pair
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if _is_unset(dest):
            setattr(args, dest, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, list(default) if isinstance(default, list) else default)


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# skiff configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/skiff.toml' if project else '~/.config/skiff/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "xai"               # "xai" | "openrouter" | "lmstudio"',
        '# model = "grok-4-0709"',
        '# api_key = "xai-..."            # prefer XAI_API_KEY / OPENROUTER_API_KEY',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 16384",
        "# max_context_tokens = 131072",
        "# temperature = 0.7",
        "# stream = true",
        "",
        "# --- Agent behaviour ---",
        "# max_turns = 100",
        "# compact_keep = 20            # messages kept by /compact and auto-compaction",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "",
        "# --- Permissions ---",
        '# auto_approve = ["read"]      # tool names, "read" for all read-only tools, "*" for everything',
        '# safe_command_classes = ["git", "npm", "ls"]',
        '# allowed_dirs = ["../shared-lib", "~/datasets"]',
        "",
        "# --- History ---",
        "# no_history = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
