"""Adapters — bindings for the external tools a step can drive.

Public re-exports for convenient access.
"""

from provisionctl.adapters.base import Adapter, ExecutionContext
from provisionctl.adapters.mock import MockAdapter
from provisionctl.adapters.registry import AdapterRegistry, default_registry

__all__ = [
    "Adapter",
    "AdapterRegistry",
    "ExecutionContext",
    "MockAdapter",
    "default_registry",
]
