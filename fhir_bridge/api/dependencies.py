"""Dependency injection for the FHIR API.

The storage adapter and configuration are process-wide; resource services
are composed per request so each request gets its own terminology resolver
(and with it, its own memoized concept lookups).
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, Header

from fhir_bridge.adapters.storage.duckdb_adapter import DuckDBAdapter
from fhir_bridge.adapters.storage.immunization_store import DuckDBImmunizationStore
from fhir_bridge.adapters.storage.practitioner_store import DuckDBPractitionerStore
from fhir_bridge.domain.services.history import HistoryReconstructor
from fhir_bridge.domain.services.obs_group_codec import ObsGroupCodec
from fhir_bridge.domain.services.resource_service import ResourceService
from fhir_bridge.domain.services.terminology import TerminologyResolver
from fhir_bridge.domain.translators.immunization import ImmunizationTranslator
from fhir_bridge.domain.translators.practitioner import PractitionerTranslator
from fhir_bridge.infrastructure.config_manager import ConfigManager
from fhir_bridge.infrastructure.settings import settings

logger = logging.getLogger(__name__)


@lru_cache()
def get_config_manager() -> ConfigManager:
    """Get the configuration manager (cached)."""
    return settings.config_manager


@lru_cache()
def get_storage_adapter() -> DuckDBAdapter:
    """Get storage adapter instance (cached).

    Returns:
        DuckDBAdapter: Adapter over the configured database
    """
    db_config = get_config_manager().get_database_config()
    logger.debug(f"Creating DuckDB adapter with path: {db_config.db_path or ':memory:'}")
    return DuckDBAdapter(db_config=db_config)


# Type aliases for dependency injection
StorageDep = Annotated[DuckDBAdapter, Depends(get_storage_adapter)]
ConfigDep = Annotated[ConfigManager, Depends(get_config_manager)]


def get_agent(config: ConfigDep, x_agent: Annotated[Optional[str], Header()] = None) -> str:
    """Acting user of the request, from the X-Agent header."""
    return x_agent or config.get_fhir_config().default_agent


AgentDep = Annotated[str, Depends(get_agent)]


def get_practitioner_service(storage: StorageDep, config: ConfigDep) -> ResourceService:
    fhir = config.get_fhir_config()
    return ResourceService(
        store=DuckDBPractitionerStore(storage),
        translator=PractitionerTranslator(identifier_system=fhir.identifier_system),
        history=HistoryReconstructor(storage),
        string_mode=fhir.string_search_mode,
        default_page_size=fhir.default_page_size,
        maximum_page_size=fhir.maximum_page_size,
    )


def get_immunization_service(storage: StorageDep, config: ConfigDep) -> ResourceService:
    """Compose the Immunization service.

    Raises:
        ConfigurationError: If the administering encounter role is not configured
    """
    fhir = config.get_fhir_config()
    administering_role_uuid = config.require("fhir.administering_encounter_role_uuid")
    codec = ObsGroupCodec(TerminologyResolver(storage))
    translator = ImmunizationTranslator(
        codec,
        administering_role_uuid=administering_role_uuid,
        encounter_type_uuid=fhir.immunizations_encounter_type_uuid,
        concepts=fhir.immunization_concepts,
        terminology_systems=fhir.terminology_systems,
    )
    return ResourceService(
        store=DuckDBImmunizationStore(
            storage,
            grouping_reference=fhir.immunization_concepts.grouping,
            administering_role_uuid=administering_role_uuid,
            terminology_systems=fhir.terminology_systems,
        ),
        translator=translator,
        history=HistoryReconstructor(storage),
        string_mode=fhir.string_search_mode,
        default_page_size=fhir.default_page_size,
        maximum_page_size=fhir.maximum_page_size,
    )

