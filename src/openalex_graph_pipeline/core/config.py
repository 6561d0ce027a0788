"""Configuration management for production and test environments.

Paths for the staging logs and the crawl state document are kept per
environment so a ``--test`` run never touches production artifacts.
Connection settings (OpenAlex contact address, Neo4j credentials) come from
the process environment, which the CLI populates from ``.env``.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

from ..utils.log import get_logger
from .errors import ConfigError

log = get_logger(__name__)

EnvironmentMode = Literal["production", "test"]

_DEFAULT_PRODUCTION_PATHS = {
    "staging_path": Path("data/papers.jsonl"),
    "failed_path": Path("data/failed_papers.jsonl"),
    "crawl_state_path": Path("data/crawl_state.json"),
    "log_dir": Path("logs"),
}

_DEFAULT_TEST_PATHS = {
    "staging_path": Path("test_data/papers.jsonl"),
    "failed_path": Path("test_data/failed_papers.jsonl"),
    "crawl_state_path": Path("test_data/crawl_state.json"),
    "log_dir": Path("test_data/logs"),
}


class EnvironmentConfig:
    """Manages environment-specific paths for pipeline artifacts."""

    def __init__(self, mode: EnvironmentMode = "production") -> None:
        self._mode: EnvironmentMode = mode
        self._paths: dict[str, Path] = {}
        self._load_paths()
        log.debug("environment_config_initialized", mode=mode, paths=str(self._paths))

    def _load_paths(self) -> None:
        if self._mode == "test":
            self._paths = _DEFAULT_TEST_PATHS.copy()
        else:
            self._paths = _DEFAULT_PRODUCTION_PATHS.copy()

    @property
    def mode(self) -> EnvironmentMode:
        return self._mode

    @property
    def staging_path(self) -> Path:
        """Append-only log of normalized records awaiting merge."""
        return self._paths["staging_path"]

    @property
    def failed_path(self) -> Path:
        """Append-only log of records whose merge batch failed."""
        return self._paths["failed_path"]

    @property
    def crawl_state_path(self) -> Path:
        return self._paths["crawl_state_path"]

    @property
    def log_dir(self) -> Path:
        return self._paths["log_dir"]

    def set_mode(self, mode: EnvironmentMode) -> None:
        """Change environment mode and reload paths."""
        if mode != self._mode:
            old_mode = self._mode
            self._mode = mode
            self._load_paths()
            log.info(
                "environment_mode_changed",
                old_mode=old_mode,
                new_mode=mode,
                new_paths=str(self._paths),
            )

    def ensure_directories(self) -> None:
        """Create all necessary directories if they don't exist."""
        for path_name, path in self._paths.items():
            if path_name.endswith("_dir"):
                path.mkdir(parents=True, exist_ok=True)
            elif path_name.endswith("_path"):
                path.parent.mkdir(parents=True, exist_ok=True)

    def get_summary(self) -> dict[str, str]:
        return {"mode": self._mode, **{k: str(v) for k, v in self._paths.items()}}


# Global configuration instance (lazily initialized)
_config: EnvironmentConfig | None = None


def get_config() -> EnvironmentConfig:
    """Get the global configuration instance, creating it in production mode."""
    global _config
    if _config is None:
        _config = EnvironmentConfig(mode="production")
    return _config


def set_test_mode() -> None:
    """Switch to test mode globally (``--test`` flag, test fixtures)."""
    global _config
    if _config is None:
        _config = EnvironmentConfig(mode="test")
        log.info("initialized_in_test_mode", paths=_config.get_summary())
    else:
        _config.set_mode("test")


def set_production_mode() -> None:
    global _config
    if _config is None:
        _config = EnvironmentConfig(mode="production")
    else:
        _config.set_mode("production")


def is_test_mode() -> bool:
    return get_config().mode == "test"


class Settings(BaseModel):
    """Connection settings read from the environment."""

    openalex_mailto: str | None = None
    openalex_base_url: str = "https://api.openalex.org"
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str | None = None

    def require_mailto(self) -> str:
        if not self.openalex_mailto:
            raise ConfigError(
                "Missing OPENALEX_MAILTO: OpenAlex requires a contact address for the polite pool"
            )
        return self.openalex_mailto

    def require_neo4j_auth(self) -> tuple[str, str]:
        if not self.neo4j_password:
            raise ConfigError("Missing NEO4J_PASSWORD in the environment or .env file")
        return self.neo4j_user, self.neo4j_password


def load_settings() -> Settings:
    """Build :class:`Settings` from environment variables.

    The ``VITE_`` prefixed names are what the web client's ``.env`` uses; they
    are accepted so both can share one file.
    """

    def env(name: str) -> str | None:
        return os.getenv(name) or os.getenv(f"VITE_{name}") or None

    settings = Settings(
        openalex_mailto=env("OPENALEX_MAILTO"),
        openalex_base_url=env("OPENALEX_BASE_URL") or Settings.model_fields["openalex_base_url"].default,
        neo4j_uri=env("NEO4J_URI") or Settings.model_fields["neo4j_uri"].default,
        neo4j_user=env("NEO4J_USER") or Settings.model_fields["neo4j_user"].default,
        neo4j_password=env("NEO4J_PASSWORD"),
    )
    log.debug(
        "settings_loaded",
        has_mailto=settings.openalex_mailto is not None,
        neo4j_uri=settings.neo4j_uri,
        base_url=settings.openalex_base_url,
    )
    return settings
