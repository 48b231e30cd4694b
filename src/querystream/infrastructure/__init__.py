"""
Infrastructure layer for external integrations.

This module contains clients for external services: target databases,
the LLM provider and the query result cache backends.
"""

from .database_client import DatabaseClient
from .llm_client import LLMClient

__all__ = ["DatabaseClient", "LLMClient"]
