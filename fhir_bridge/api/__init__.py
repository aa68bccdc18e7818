"""FHIR REST API for FHIR-Bridge.

This module provides the FastAPI application serving FHIR resources
over the store.
"""
