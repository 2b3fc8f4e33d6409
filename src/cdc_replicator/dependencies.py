"""Parent/child relationships between service integrations."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .backfill import JobScheduler
from .db.repository import IntegrationRepository
from .errors import DependencyAmbiguous, DependencyMissing
from .models import ServiceIntegration
from .replicator.base import Replicator
from .replicator.registry import Registry

logger = logging.getLogger(__name__)


class DependencyGraphManager:
    def __init__(
        self,
        integrations: IntegrationRepository,
        registry: Registry,
        *,
        scheduler: Optional[JobScheduler] = None,
    ) -> None:
        self.integrations = integrations
        self.registry = registry
        self.scheduler = scheduler

    def dependents(self, root: ServiceIntegration) -> List[ServiceIntegration]:
        return self.integrations.find_integrations(root.organization_id, depends_on_id=root.id)

    def build_dependents(self, root: ServiceIntegration) -> List[ServiceIntegration]:
        """Create each declared dependent once, with an incremental backfill job.

        Dependents that already exist for ``root`` are left alone, so calling
        this again is harmless. Returns only the integrations created now.
        """
        created: List[ServiceIntegration] = []
        for descriptor in self.registry.dependents_of(root.service_name):
            existing = self.integrations.find_integrations(
                root.organization_id, service_name=descriptor.name, depends_on_id=root.id
            )
            if existing:
                logger.debug(
                    "%s already has a %s dependent; skipping", root.opaque_id, descriptor.name
                )
                continue
            dependent = self.integrations.create_integration(
                root.organization_id, descriptor.name, depends_on_id=root.id
            )
            job = self.integrations.create_backfill_job(dependent.id, incremental=True)
            logger.info(
                "created %s dependent %s of %s with backfill job %s",
                descriptor.name,
                dependent.opaque_id,
                root.opaque_id,
                job.opaque_id,
            )
            if self.scheduler is not None:
                self.scheduler.enqueue_backfill(job)
            created.append(dependent)
        return created

    def get_dependent_integration(
        self, root: ServiceIntegration, service_name: Optional[str] = None
    ) -> ServiceIntegration:
        """Return the single dependent of ``root`` (optionally of one service)."""
        matches = [
            sint
            for sint in self.dependents(root)
            if service_name is None or sint.service_name == service_name
        ]
        label = service_name or "any service"
        if not matches:
            raise DependencyMissing(
                f"there are no dependent integrations of {root.opaque_id} for {label}"
            )
        if len(matches) > 1:
            raise DependencyAmbiguous(
                f"there are {len(matches)} dependent integrations of {root.opaque_id} "
                f"for {label}"
            )
        return matches[0]

    def find_root(self, sint: ServiceIntegration) -> ServiceIntegration:
        """Walk ``depends_on`` links up to the integration with no parent."""
        seen = {sint.id}
        current = sint
        while current.depends_on_id is not None:
            current = self.integrations.get_integration(current.depends_on_id)
            if current.id in seen:
                raise DependencyAmbiguous(f"dependency cycle through {current.opaque_id}")
            seen.add(current.id)
        return current

    def notify_dependents(
        self,
        parent: Replicator,
        diff,
        replicator_factory: Callable[[ServiceIntegration], Replicator],
    ) -> int:
        """Call ``on_dependency_upsert`` on each dependent of ``parent``."""
        notified = 0
        for dependent in self.dependents(parent.service_integration):
            replicator_factory(dependent).on_dependency_upsert(parent, diff)
            notified += 1
        return notified


__all__ = ["DependencyGraphManager"]
