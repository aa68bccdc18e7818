"""FHIR-Bridge.

FHIR R4 API over a generic concept-and-observation clinical store.
"""

__version__ = "1.0.0"
