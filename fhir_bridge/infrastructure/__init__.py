"""Infrastructure: configuration and application settings."""
