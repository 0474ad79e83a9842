"""Configuration Loader for the matching core.

Settings live in settings.yaml next to this module and are validated with
pydantic. Credentials come from the environment (.env is honoured): either a full
DATABASE_URL, or PGUSER/PGPASSWORD picked up by libpq for the
credential-free default URL.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .exceptions import ErrorCode, MedExpertMatchError

load_dotenv()


# =============================================================================
# PYDANTIC MODELS FOR CONFIGURATION VALIDATION
# =============================================================================

class DatabaseSettings(BaseModel):
    """PostgreSQL connection pool settings."""
    url: str = "postgresql+psycopg://localhost:5432/medexpertmatch"
    schema_name: str = Field("medexpertmatch", alias="schema")
    pool_size: int = 10
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_pre_ping: bool = True

    model_config = {"populate_by_name": True}


class GraphSettings(BaseModel):
    """Apache AGE graph settings."""
    name: str = "medexpertmatch_graph"
    search_path: list[str] = Field(
        default_factory=lambda: ["ag_catalog", '"$user"', "public", "medexpertmatch"]
    )

    @field_validator("name")
    @classmethod
    def _graph_name_is_identifier(cls, value: str) -> str:
        if not value or not value.replace("_", "a").isalnum():
            raise ValueError(f"graph name must be a plain identifier, got {value!r}")
        return value


class MatchingSettings(BaseModel):
    """Defaults for the matching orchestrator."""
    default_max_results: int = 10
    default_routing_results: int = 5
    facility_doctor_limit: int = 500
    match_status: str = "PENDING"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class AppConfig(BaseModel):
    """Complete configuration container."""
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    graph: GraphSettings = Field(default_factory=GraphSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# =============================================================================
# CONFIGURATION LOADER
# =============================================================================

_PACKAGE_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = _PACKAGE_DIR / "settings.yaml"


def _apply_env_overrides(raw: dict) -> dict:
    """Environment variables win over YAML values."""
    overrides = {
        ("database", "url"): os.environ.get("DATABASE_URL"),
        ("graph", "name"): os.environ.get("MEDEXPERTMATCH_GRAPH_NAME"),
        ("logging", "level"): os.environ.get("MEDEXPERTMATCH_LOG_LEVEL"),
    }
    for (section, key), value in overrides.items():
        if value:
            raw.setdefault(section, {})[key] = value
    return raw


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to MEDEXPERTMATCH_CONFIG,
            then settings.yaml in the package directory.

    Returns:
        Validated AppConfig object
    """
    if config_path is None:
        config_path = os.environ.get("MEDEXPERTMATCH_CONFIG") or DEFAULT_CONFIG_PATH

    raw = {}
    if Path(config_path).exists():
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f) or {}

    raw = _apply_env_overrides(raw)
    try:
        return AppConfig(**raw)
    except ValueError as e:
        raise MedExpertMatchError.from_code(ErrorCode.CONFIG_INVALID, str(e), path=str(config_path)) from e


def configure_logging(config: Optional[AppConfig] = None) -> None:
    """Configure root logging from the logging section."""
    config = config or get_config()
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format=config.logging.format,
    )


# =============================================================================
# CONFIG SINGLETON
# =============================================================================

_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the loaded configuration (singleton)."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[str] = None) -> AppConfig:
    """Force reload of configuration."""
    global _config
    _config = load_config(config_path)
    return _config
