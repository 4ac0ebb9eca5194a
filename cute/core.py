"""cute core - config loading and variable resolution."""

import os
import re
from pathlib import Path

import yaml
from dotenv import dotenv_values

GLOBAL_DIR = Path.home() / ".cute"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"
DEFAULT_DB_NAME = "cute.sqlite"
DEFAULT_TIMEOUT = 30

CWD_CONFIG_CANDIDATES = [
    ".cute.yaml",
    ".cute.yml",
    "cute.yaml",
    "cute.yml",
]


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Pick the .cute.yaml that supplies db_path, wget, headers and timeout.

    A -c path is used alone: when it does not exist there is no config,
    even if the project or ~/.cute has one. Otherwise the first
    CWD_CONFIG_CANDIDATES match wins, then ~/.cute/config.yaml.
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def load_config(config_path: str | Path | None) -> dict:
    """Read the defaults: mapping of a cute config file.

    Keys cute understands: db_path, env_file, timeout, wget, headers and
    user_agent. '_config_dir' is added so a relative db_path or env_file
    points next to the file that named it.
    """
    empty = {"defaults": {}, "_config_dir": None}
    if config_path is None or not Path(config_path).exists():
        return empty
    path = Path(config_path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return {
        "defaults": data.get("defaults") or {},
        "_config_dir": path.resolve().parent,
    }


def load_env(env_file: str | None, base_dir: str = ".") -> dict[str, str]:
    """Variables for ${VAR} expansion in URLs, logins and bearer tokens.

    Starts from os.environ; names set in env_file replace it. The AWS_*
    keys for --aws-sigv4 are read from this mapping too.
    """
    env = dict(os.environ)
    if env_file:
        dotenv_path = Path(base_dir) / env_file
        if dotenv_path.exists():
            dotenv_vars = dotenv_values(str(dotenv_path))
            env.update({k: v for k, v in dotenv_vars.items() if v is not None})
    return env


_VAR_RE = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def resolve_value(value, env: dict[str, str]):
    """Expand $VAR and ${VAR} in a flag or config header value.

    A name found in neither env nor os.environ stays as typed, so a literal
    '$' in a password survives. Non-strings pass through.
    """
    if not isinstance(value, str):
        return value

    def _lookup(m: re.Match) -> str:
        name = m.group(1) or m.group(2)
        return env.get(name, os.environ.get(name, m.group(0)))

    return _VAR_RE.sub(_lookup, value)


def resolve_db_path(defaults: dict, config_dir: Path | None) -> Path:
    """Where the saved command store lives.

    A relative db_path is taken from the config file's directory.
    """
    raw = defaults.get("db_path")
    if not raw:
        return GLOBAL_DIR / DEFAULT_DB_NAME
    path = Path(os.path.expanduser(str(raw)))
    if not path.is_absolute() and config_dir is not None:
        path = config_dir / path
    return path


def resolve_timeout(defaults: dict, override: float | None = None) -> float:
    if override is not None:
        return float(override)
    return float(defaults.get("timeout", DEFAULT_TIMEOUT))
