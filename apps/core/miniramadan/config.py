"""Application configuration utilities."""
from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AppConfig(BaseModel):
    """Strongly typed configuration loaded from config.json."""

    database_path: str = Field(default="./data/miniramadan.db")
    snapshot_key: str = Field(default="miniramadan-family-storage")
    max_pending_retries: int = Field(default=5, ge=1)
    clear_cache_on_sign_out: bool = Field(default=False)
    request_timeout_seconds: float = Field(default=15.0, gt=0)
    teardown_timeout_seconds: float = Field(default=2.0, gt=0)
    realtime_kinds: List[str] = Field(default_factory=lambda: ["stars", "messages"])
    default_profile_types: List[str] = Field(default_factory=lambda: ["adult", "adult"])

    @property
    def resolved_database_path(self) -> Path:
        """Return the absolute path for the SQLite database file."""
        path = Path(self.database_path)
        if path.is_absolute():
            return path
        return (Path(__file__).resolve().parents[1] / path).resolve()


def _config_path() -> Path:
    return Path(__file__).resolve().parents[1] / "config.json"


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from config.json.

    A missing default file yields the defaults; a file named explicitly (argument
    or MINIRAMADAN_CONFIG) must exist.
    """

    explicit = path or os.getenv("MINIRAMADAN_CONFIG")
    config_file = Path(explicit) if explicit else _config_path()
    if not config_file.exists():
        if explicit:
            example = _config_path().with_name("config.example.json")
            raise FileNotFoundError(
                f"Missing config file at {config_file}. Copy {example} and adjust it."
            )
        return AppConfig()

    contents: Dict[str, Any] = json.loads(config_file.read_text())
    return AppConfig(**contents)


@lru_cache
def get_config() -> AppConfig:
    return load_config()
