"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.
"""

import os
from typing import Optional

from fhir_bridge.infrastructure.config_manager import ConfigManager, DatabaseConfig, FhirConfig

# Application metadata
APP_NAME = "FHIR-Bridge"
APP_VERSION = "1.0.0"
FHIR_VERSION = "4.0.1"


class Settings:
    """Application settings loaded from configuration manager and environment."""

    def __init__(self):
        """Initialize settings from configuration manager and environment."""
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("FB_APP_NAME", APP_NAME)
        self.log_level = os.getenv("FB_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("FB_LOG_JSON", "false").lower() == "true"
        self.host = os.getenv("FB_HOST", "127.0.0.1")
        self.port = int(os.getenv("FB_PORT", "8000"))
        self.base_url = os.getenv("FB_BASE_URL", "").rstrip("/")
        self.config_file = os.getenv("FB_CONFIG_FILE")

    @property
    def config_manager(self) -> ConfigManager:
        """Get configuration manager instance.

        Loaded from ``FB_CONFIG_FILE`` when set, otherwise from the environment.
        """
        if self._config_manager is None:
            if self.config_file:
                self._config_manager = ConfigManager.from_file(self.config_file)
            else:
                self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    @property
    def fhir_config(self) -> FhirConfig:
        return self.config_manager.get_fhir_config()

    def get_db_path(self) -> str:
        """Get database path for DuckDB.

        Returns:
            Database path or ':memory:' for in-memory database
        """
        return self.db_config.get_connection_string()


# Global settings instance
settings = Settings()
