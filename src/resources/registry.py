"""
Kind Registry - registration and discovery of resource kinds.

Built-in kinds are registered explicitly; additional kinds shipped by other
packages are discovered through the 'iam_reconciler.kinds' entry point group.
"""

import logging
from importlib.metadata import entry_points
from typing import Dict, List, Optional, Type

from resources.base import ResourceKind

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "iam_reconciler.kinds"


class KindRegistry:
    """Central registry of resource kinds, keyed by kind name."""

    def __init__(self):
        self._kinds: Dict[str, Type[ResourceKind]] = {}
        self._instances: Dict[str, ResourceKind] = {}

    def register(self, kind_class: Type[ResourceKind]) -> None:
        """
        Register a resource kind class.

        Args:
            kind_class: The ResourceKind subclass to register
        """
        temp_instance = kind_class()
        name = temp_instance.name

        if name in self._kinds:
            logger.warning(f"Overwriting existing resource kind: {name}")

        self._kinds[name] = kind_class
        self._instances.pop(name, None)
        logger.info(
            f"Registered resource kind: {name} (schema v{temp_instance.schema_version})"
        )

    def get(self, name: str) -> ResourceKind:
        """
        Get the resource kind instance for a name.

        Raises:
            ValueError: If the kind is not registered
        """
        if name not in self._kinds:
            available = ", ".join(sorted(self._kinds)) or "none"
            raise ValueError(
                f"Unknown resource kind: {name}. Available kinds: {available}"
            )

        if name not in self._instances:
            self._instances[name] = self._kinds[name]()
        return self._instances[name]

    def has(self, name: str) -> bool:
        return name in self._kinds

    def list_kinds(self) -> List[str]:
        return sorted(self._kinds)


# Global registry instance
_registry: Optional[KindRegistry] = None


def get_registry() -> KindRegistry:
    """Get the global kind registry singleton."""
    global _registry
    if _registry is None:
        _registry = KindRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_kinds() -> KindRegistry:
    """Register the built-in kinds and any kinds installed via entry points."""
    from resources.email_template import EmailTemplateKind
    from resources.user import UserKind

    registry = get_registry()
    registry.register(UserKind)
    registry.register(EmailTemplateKind)

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            registry.register(ep.load())
        except Exception as e:
            logger.warning(f"Could not load resource kind {ep.name}: {e}")

    return registry
