"""Configuration loading, validation and platform definitions."""
