"""Machining quotation intake core: guardrails, lifecycle, provider sourcing and retrieval."""

__version__ = "0.1.0"
