"""Resource translators between store records and FHIR resources."""
