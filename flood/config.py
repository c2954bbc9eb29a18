"""Single source of truth for all configuration.

All modules import from here, never from os.environ directly.

Values come from an optional dotenv file (``FLOOD_ENV_FILE``, default
``flood.env`` at the project root), overlaid by the process environment.
Credentials are not kept here; see :mod:`flood.credentials`.
"""

import os
from pathlib import Path

from dotenv import dotenv_values

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _load(env_file: Path) -> dict[str, str | None]:
    """Merge the dotenv file (if present) with the process environment."""
    values: dict[str, str | None] = {}
    if env_file.is_file():
        values.update(dotenv_values(env_file))
    values.update({k: v for k, v in os.environ.items() if k.startswith("FLOOD_")})
    return values


_settings = _load(Path(os.environ.get("FLOOD_ENV_FILE", PROJECT_ROOT / "flood.env")))

# --- Paths ---
SERVER_DIR: str = _settings.get("FLOOD_SERVER_DIR") or ""
CREDENTIALS_FILE: str = _settings.get("FLOOD_CREDENTIALS_FILE") or ""
LEDGER_DB_PATH: str = _settings.get("FLOOD_LEDGER_DB_PATH") or str(Path.cwd() / "flood.db")

# --- Retry policy ---
MAX_ATTEMPTS: int = int(_settings.get("FLOOD_MAX_ATTEMPTS") or "10")
BACKOFF_BASE_SECONDS: float = float(_settings.get("FLOOD_BACKOFF_BASE_SECONDS") or "30")
BACKOFF_JITTER_SECONDS: float = float(_settings.get("FLOOD_BACKOFF_JITTER_SECONDS") or "1")

# --- Watcher ---
SETTLE_SECONDS: float = float(_settings.get("FLOOD_SETTLE_SECONDS") or "1.0")
