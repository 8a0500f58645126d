"""Monitoring server: Top SQL storage and queries, runtime configuration, HTTP service."""

__version__ = "0.1.0"
__all__ = [
    "app",
    "cli",
    "config",
    "config_service",
    "document",
    "pdvariable",
    "persist",
    "query",
    "store",
    "topsql_service",
    "utils",
]