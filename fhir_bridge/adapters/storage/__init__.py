"""Storage adapters for FHIR-Bridge.

This module contains the DuckDB adapter (concept dictionary and audit trail)
and the per-resource entity stores built on it.
"""

from fhir_bridge.adapters.storage.duckdb_adapter import DuckDBAdapter
from fhir_bridge.adapters.storage.immunization_store import DuckDBImmunizationStore
from fhir_bridge.adapters.storage.practitioner_store import DuckDBPractitionerStore

__all__ = ["DuckDBAdapter", "DuckDBImmunizationStore", "DuckDBPractitionerStore"]
