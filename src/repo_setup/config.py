"""Load .repo-setup.yml + environment overrides into Settings."""

import os
from dataclasses import dataclass, field
from functools import cached_property

import yaml

from repo_setup import process

CONFIG_FILE = ".repo-setup.yml"
DEBUG_ENV = process.TRACE_ENV
IGNORE_GITIGNORE_ENV = "REPO_SETUP_IGNORE_GITIGNORE"


def _to_bool(value) -> bool:
    """Only a literal true (any case) is true."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() == "true"


@dataclass
class Settings:
    debug: bool = False
    upstream_name: str = "upstream"
    branch: str = "master"
    env: dict[str, str] = field(default_factory=dict)
    raw: dict = field(default_factory=dict, repr=False)

    @cached_property
    def ignore_gitignore(self) -> bool:
        """Whether ``git add`` should force ignored files in.

        Computed on first use and kept for the lifetime of this Settings.
        """
        env_value = os.environ.get(IGNORE_GITIGNORE_ENV)
        if env_value is not None:
            return _to_bool(env_value)
        return _to_bool(self.raw.get("ignore_gitignore"))


def _read_file(path: str) -> dict:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid config file {path}: expected a mapping")
    return data


def parse_settings(data: dict) -> Settings:
    """Build Settings from a config dict, applying environment overrides."""
    env = data.get("env") or {}
    if not isinstance(env, dict):
        raise ValueError("'env' must be a mapping of variable names to values")

    debug = _to_bool(data.get("debug"))
    if os.environ.get(DEBUG_ENV) is not None:
        debug = process.trace_enabled()

    return Settings(
        debug=debug,
        upstream_name=str(data.get("upstream_name", "upstream")),
        branch=str(data.get("branch", "master")),
        env={str(k): str(v) for k, v in env.items()},
        raw=data,
    )


def load_settings(path: str | None = None) -> Settings:
    """Load settings from ``path`` (default: .repo-setup.yml in cwd).

    A missing file yields defaults; a malformed one raises ValueError.
    """
    return parse_settings(_read_file(path or CONFIG_FILE))
