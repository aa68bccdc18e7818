"""Adapters layer for FHIR-Bridge.

This module contains adapters that implement Port interfaces defined in the
domain layer on top of concrete storage engines.
"""
