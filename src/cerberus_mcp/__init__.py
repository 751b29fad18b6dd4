"""Cerberus MCP: crash-safe orchestration for multi-agent pentest pipelines."""

__version__ = "0.1.0"

__all__ = ["__version__"]
