"""Storefront telemetry event bus."""

__version__ = "1.0.0"
