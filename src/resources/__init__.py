"""
Managed resource kinds.

Each kind implements the ResourceKind interface consumed by the reconciler.
"""

from resources.base import (
    Diagnostic,
    Outcome,
    ReconcileResult,
    ResourceKind,
    Severity,
    UpdateCall,
)
from resources.registry import KindRegistry, get_registry, register_builtin_kinds

__all__ = [
    "Diagnostic",
    "Outcome",
    "ReconcileResult",
    "ResourceKind",
    "Severity",
    "UpdateCall",
    "KindRegistry",
    "get_registry",
    "register_builtin_kinds",
]
