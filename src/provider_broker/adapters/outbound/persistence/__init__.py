"""Persistence adapters for provider configuration and statistics."""
