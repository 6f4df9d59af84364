"""Runtime paths and environment settings."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from logit.errors import ConfigError
from logit.store import DEFAULT_INSERT_BATCH_SIZE

LOGIT_DIR = ".logit"
OUTPUT_DIR = "output"

ENV_OUT_DIR = "LOGIT_OUT_DIR"
ENV_BATCH_SIZE = "LOGIT_BATCH_SIZE"
ENV_LOG_LEVEL = "LOGIT_LOG_LEVEL"


@dataclass
class RuntimePaths:
    home_dir: Path
    cwd: Path
    out_dir: Path


@dataclass
class Settings:
    out_dir: str | None = None
    batch_size: int = DEFAULT_INSERT_BATCH_SIZE
    log_level: str = "WARNING"


def _normalize_lexical(path: Path) -> Path:
    """Collapse ``.`` and ``..`` without touching the filesystem."""
    return Path(os.path.normpath(path))


def _expand_tilde(path: Path, home_dir: Path) -> Path:
    parts = path.parts
    if not parts:
        return path
    if parts[0] == "~":
        return home_dir.joinpath(*parts[1:])
    if parts[0].startswith("~"):
        raise ConfigError(
            "unsupported home expansion syntax (only `~` and `~/...` are supported): "
            f"{path}"
        )
    return path


def resolve_runtime_paths(home_dir: Path, cwd: Path,
                          out_dir_override: Path | None = None) -> RuntimePaths:
    """Resolve the output directory against explicit home and working dirs.

    Defaults to ``<home>/.logit/output``. Overrides may start with ``~``
    and relative overrides are joined onto ``cwd``.
    """
    if not home_dir.is_absolute():
        raise ConfigError(f"home_dir must be absolute: {home_dir}")
    if not cwd.is_absolute():
        raise ConfigError(f"cwd must be absolute: {cwd}")

    home_dir = _normalize_lexical(home_dir)
    cwd = _normalize_lexical(cwd)

    if out_dir_override is None:
        out_dir = home_dir / LOGIT_DIR / OUTPUT_DIR
    else:
        expanded = _expand_tilde(Path(out_dir_override), home_dir)
        out_dir = expanded if expanded.is_absolute() else cwd / expanded

    return RuntimePaths(home_dir=home_dir, cwd=cwd, out_dir=_normalize_lexical(out_dir))


def _load_env() -> None:
    """Load the nearest .env file, walking up from CWD."""
    cwd = Path.cwd()
    for parent in [cwd, *cwd.parents]:
        env_file = parent / ".env"
        if env_file.exists():
            load_dotenv(env_file)
            return


def load_settings() -> Settings:
    """Read LOGIT_* settings from the environment (after .env)."""
    _load_env()
    settings = Settings(
        out_dir=os.environ.get(ENV_OUT_DIR) or None,
        log_level=os.environ.get(ENV_LOG_LEVEL) or Settings.log_level,
    )
    raw_batch = os.environ.get(ENV_BATCH_SIZE)
    if raw_batch:
        try:
            settings.batch_size = int(raw_batch)
        except ValueError:
            raise ConfigError(f"{ENV_BATCH_SIZE} must be an integer: {raw_batch!r}") from None
        if settings.batch_size < 1:
            raise ConfigError(f"{ENV_BATCH_SIZE} must be positive: {raw_batch!r}")
    return settings
