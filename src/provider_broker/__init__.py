"""Resilient multi-provider orchestration for external service APIs."""

__version__ = "0.1.0"
