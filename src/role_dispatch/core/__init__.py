"""Core dispatch machinery: configuration, roles, providers, and orchestration."""
