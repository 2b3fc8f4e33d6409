"""Service-name keyed registry of replicator implementations."""

from __future__ import annotations

import importlib
import logging
from threading import Lock
from typing import Dict, List, Optional, Type

from ..errors import UnknownService
from ..models import ServiceIntegration
from .base import Descriptor, Replicator, ReplicatorContext

logger = logging.getLogger(__name__)

BUILTIN_MODULES = ("cdc_replicator.replicator.fake",)


class Registry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._classes: Dict[str, Type[Replicator]] = {}

    def register(self, cls: Type[Replicator]) -> Type[Replicator]:
        """Class decorator adding ``cls`` under its descriptor name."""
        name = cls.descriptor().name
        with self._lock:
            existing = self._classes.get(name)
            if existing is not None and existing is not cls:
                raise ValueError(f"replicator {name!r} is already registered")
            self._classes[name] = cls
        return cls

    def registered(self, name: str) -> Optional[Descriptor]:
        cls = self._classes.get(name)
        return cls.descriptor() if cls is not None else None

    def registered_or_raise(self, name: str) -> Descriptor:
        descriptor = self.registered(name)
        if descriptor is None:
            raise UnknownService(f"no replicator registered for {name!r}")
        return descriptor

    def replicator_class(self, name: str) -> Type[Replicator]:
        try:
            return self._classes[name]
        except KeyError:
            raise UnknownService(f"no replicator registered for {name!r}") from None

    def create(
        self, service_integration: ServiceIntegration, context: ReplicatorContext
    ) -> Replicator:
        cls = self.replicator_class(service_integration.service_name)
        return cls(service_integration, context)

    def descriptors(self) -> List[Descriptor]:
        with self._lock:
            classes = list(self._classes.values())
        return sorted((cls.descriptor() for cls in classes), key=lambda d: d.name)

    def dependents_of(self, name: str) -> List[Descriptor]:
        """Descriptors whose ``dependency_name`` is ``name``."""
        return [d for d in self.descriptors() if d.dependency_name == name]


default_registry = Registry()
register = default_registry.register


def load_replicators(modules=BUILTIN_MODULES) -> Registry:
    """Import modules whose replicators register themselves on import."""
    for module in modules:
        importlib.import_module(module)
        logger.debug("loaded replicators from %s", module)
    return default_registry


__all__ = ["Registry", "default_registry", "load_replicators", "register"]
