"""
Registry of source adapters.

Adapters are external, swappable strategies. They are registered in code,
discovered from the ``scholarguard.adapters`` entry point group of installed
distributions, or loaded from a ``module:attribute`` path.
"""

from __future__ import annotations

import importlib
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional

import structlog

from scholarguard.exceptions import ConfigurationError
from scholarguard.protocols import SourceAdapter

logger = structlog.get_logger(__name__)

ENTRY_POINT_GROUP = "scholarguard.adapters"


def _instantiate(obj: Any, origin: str) -> SourceAdapter:
    """Accept an adapter instance, or a class/factory that builds one without arguments."""
    adapter = obj
    if isinstance(obj, type) or (not isinstance(obj, SourceAdapter) and callable(obj)):
        adapter = obj()
    if not isinstance(adapter, SourceAdapter):
        raise ConfigurationError(f"{origin} does not provide a source adapter")
    return adapter


class AdapterRegistry:
    """Owns the adapters the orchestrator runs, keyed by unique name."""

    def __init__(self) -> None:
        self._adapters: Dict[str, SourceAdapter] = {}

    def register(self, adapter: SourceAdapter) -> SourceAdapter:
        if adapter.name in self._adapters:
            raise ValueError(f"Adapter already registered: {adapter.name}")
        self._adapters[adapter.name] = adapter
        logger.debug("Adapter registered", source=adapter.name, priority=adapter.priority)
        return adapter

    def unregister(self, name: str) -> None:
        if self._adapters.pop(name, None) is None:
            raise KeyError(name)

    def get(self, name: str) -> Optional[SourceAdapter]:
        return self._adapters.get(name)

    def adapters(self) -> List[SourceAdapter]:
        """Registered adapters ordered by priority, then name."""
        return sorted(self._adapters.values(), key=lambda a: (a.priority, a.name))

    def names(self) -> List[str]:
        return [a.name for a in self.adapters()]

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """Register every adapter advertised under ``group``. Returns how many were added."""
        added = 0
        for ep in entry_points(group=group):
            adapter = _instantiate(ep.load(), f"entry point {ep.name}")
            if adapter.name in self._adapters:
                logger.warning("Skipping duplicate adapter from entry point", source=adapter.name, entry_point=ep.name)
                continue
            self.register(adapter)
            added += 1
        logger.info("Adapters loaded from entry points", group=group, count=added)
        return added

    def load_path(self, path: str) -> SourceAdapter:
        """Import ``module:attribute`` and register the adapter it names."""
        module_name, sep, attr = path.partition(":")
        if not sep or not module_name or not attr:
            raise ConfigurationError(f"Adapter path must look like 'module:attribute', got {path!r}")
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise ConfigurationError(f"Cannot import adapter module {module_name!r}: {e}") from e
        obj: Any = module
        for part in attr.split("."):
            try:
                obj = getattr(obj, part)
            except AttributeError as e:
                raise ConfigurationError(f"{module_name!r} has no attribute {attr!r}") from e
        return self.register(_instantiate(obj, path))

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters
