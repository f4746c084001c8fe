"""Guardrail engine for automated crypto trading signals."""

__version__ = "0.1.0"
