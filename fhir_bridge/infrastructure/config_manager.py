"""Configuration Manager.

This module loads the bridge's configuration (store location, FHIR surface
settings, obs-group terminology references, encounter roles and types) from
environment variables, a ``.env`` file or a JSON file, and validates it with
Pydantic models.

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Settings that have no sensible default are looked up with ``require``
      and fail at first use, naming the missing key
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from fhir_bridge.domain.ports import ConfigurationError
from fhir_bridge.domain.translators.immunization import ImmunizationConcepts

logger = logging.getLogger(__name__)

DEFAULT_TERMINOLOGY_SYSTEMS = {"CIEL": "https://cielterminology.org"}


class DatabaseConfig(BaseModel):
    """Store configuration.

    Parameters:
        db_type: Type of database; only 'duckdb' is supported
        db_path: Path to database file, or ':memory:'
        read_only: Open the database read-only
    """

    db_type: str = Field(default="duckdb", description="Database type")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")
    read_only: bool = Field(default=False, description="Open the database read-only")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        supported_types = ["duckdb"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database directory exists (if a path is given)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")

        return str(db_path_obj)

    def get_connection_string(self) -> str:
        return self.db_path or ":memory:"


class FhirConfig(BaseModel):
    """FHIR surface configuration.

    Parameters:
        default_page_size: Search page size when the client gives none
        maximum_page_size: Upper bound on client page sizes
        string_search_mode: Default string matching ("start", "exact", "contains")
        identifier_system: System URI of practitioner identifiers
        default_agent: Acting user recorded when a request names none
        administering_encounter_role_uuid: Encounter role of administering providers
        immunizations_encounter_type_uuid: Encounter type of immunization encounters
        immunization_concepts: Terminology references of the immunization obs group
        terminology_systems: Vocabulary name -> coding system URI
    """

    default_page_size: int = Field(default=10, ge=1)
    maximum_page_size: int = Field(default=100, ge=1)
    string_search_mode: str = Field(default="start")
    identifier_system: Optional[str] = None
    default_agent: str = Field(default="system")
    administering_encounter_role_uuid: Optional[str] = None
    immunizations_encounter_type_uuid: Optional[str] = None
    immunization_concepts: ImmunizationConcepts = Field(default_factory=ImmunizationConcepts)
    terminology_systems: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_TERMINOLOGY_SYSTEMS))

    @field_validator("string_search_mode")
    @classmethod
    def validate_string_search_mode(cls, v: str) -> str:
        modes = ["start", "exact", "contains"]
        if v not in modes:
            raise ValueError(f"Unsupported string search mode: {v}. Supported: {modes}")
        return v


def _parse_systems(raw: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse ``"CIEL=https://...,LOINC=http://loinc.org"``."""
    if not raw:
        return None
    systems = {}
    for item in raw.split(","):
        vocabulary, sep, url = item.partition("=")
        if not sep or not vocabulary.strip() or not url.strip():
            raise ConfigurationError(
                f"Invalid terminology system entry '{item}'; expected '<vocabulary>=<uri>'",
                key="fhir.terminology_systems"
            )
        systems[vocabulary.strip()] = url.strip()
    return systems


class ConfigManager:
    """Configuration manager for the store and the FHIR surface.

    Example Usage:
        ```python
        # Load from environment variables (and .env)
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        # Load from file
        config = ConfigManager.from_file("config.json")
        role = config.require("fhir.administering_encounter_role_uuid")
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with "database" and "fhir" sections
        """
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._fhir_config: Optional[FhirConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - FB_DB_TYPE: Database type (duckdb)
            - FB_DB_PATH: Path to database file
            - FB_DB_READ_ONLY: Open the database read-only ("true"/"false")
            - FB_DEFAULT_PAGE_SIZE / FB_MAXIMUM_PAGE_SIZE: Search paging
            - FB_STRING_SEARCH_MODE: start, exact or contains
            - FB_IDENTIFIER_SYSTEM: Practitioner identifier system URI
            - FB_DEFAULT_AGENT: Acting user when a request names none
            - FB_ADMINISTERING_ENCOUNTER_ROLE_UUID: Administering provider role
            - FB_IMMUNIZATIONS_ENCOUNTER_TYPE_UUID: Immunization encounter type
            - FB_TERMINOLOGY_SYSTEMS: "CIEL=https://cielterminology.org,..."

        A ``.env`` file in the working directory (or ``env_file``) is loaded
        first; variables already set in the environment win.

        Returns:
            ConfigManager instance
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment variables from {env_path}")

        fhir: Dict[str, Any] = {
            "default_page_size": os.getenv("FB_DEFAULT_PAGE_SIZE"),
            "maximum_page_size": os.getenv("FB_MAXIMUM_PAGE_SIZE"),
            "string_search_mode": os.getenv("FB_STRING_SEARCH_MODE"),
            "identifier_system": os.getenv("FB_IDENTIFIER_SYSTEM"),
            "default_agent": os.getenv("FB_DEFAULT_AGENT"),
            "administering_encounter_role_uuid": os.getenv("FB_ADMINISTERING_ENCOUNTER_ROLE_UUID"),
            "immunizations_encounter_type_uuid": os.getenv("FB_IMMUNIZATIONS_ENCOUNTER_TYPE_UUID"),
            "terminology_systems": _parse_systems(os.getenv("FB_TERMINOLOGY_SYSTEMS")),
        }

        config_data = {
            "database": {
                "db_type": os.getenv("FB_DB_TYPE", "duckdb"),
                "db_path": os.getenv("FB_DB_PATH"),
                "read_only": os.getenv("FB_DB_READ_ONLY", "false").lower() == "true",
            },
            "fhir": {k: v for k, v in fhir.items() if v is not None},
        }

        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        """Get database configuration.

        Returns:
            DatabaseConfig instance
        """
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._config_data.get("database", {}))
        return self._database_config

    def get_fhir_config(self) -> FhirConfig:
        """Get FHIR surface configuration.

        Returns:
            FhirConfig instance
        """
        if self._fhir_config is None:
            self._fhir_config = FhirConfig(**self._config_data.get("fhir", {}))
        return self._fhir_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "fhir.default_page_size")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default

    def require(self, key: str) -> Any:
        """Get a configuration value that has no default.

        Parameters:
            key: Configuration key in dot notation

        Returns:
            Configuration value

        Raises:
            ConfigurationError: If the key is missing or empty
        """
        value = self.get(key)
        if value is None or value == "":
            raise ConfigurationError(f"Required configuration '{key}' is not set", key=key)
        return value


