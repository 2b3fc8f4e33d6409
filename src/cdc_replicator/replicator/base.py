"""The contract every replicator implements, plus its optional capability facets.

A replicator is stateless logic bound to one :class:`ServiceIntegration`. The
base class carries the scaffolding shared by all adapters (table schema,
normalization, onboarding transitions, dependency lookup). Optional behaviour
is expressed as separate protocols an adapter may or may not satisfy:

* :class:`PageFetcher` for historical backfill,
* :class:`EnrichmentSource` for a secondary fetch after each upsert,
* :class:`StaleRowSource` for the stale-row maintenance job.

The webhook validation variant is composed in through :meth:`webhook_validator`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from ..errors import DependencyMissing, InvalidPrecondition, UpstreamFetchError
from ..models import ServiceIntegration
from .columns import ENRICHMENT_COLUMN, Column, TableSchema
from .state_machine import (
    BACKFILL_FIELDS,
    DEPENDENCY_CHOICE,
    WEBHOOK_FIELDS,
    StateMachineStep,
    transition_url,
)
from .webhooks import AcceptAllValidator, WebhookRequest, WebhookResponse, WebhookValidator

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..db.repository import IntegrationRepository
    from ..db.row_store import RowStore
    from ..source_api import SourceApiClient
    from .registry import Registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Descriptor:
    """Static facts about a replicator, used by the registry and onboarding."""

    name: str
    resource_name_singular: str
    resource_name_plural: str = ""
    supports_webhooks: bool = False
    supports_backfill: bool = False
    dependency_name: Optional[str] = None
    feature_roles: Tuple[str, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        if not (self.supports_webhooks or self.supports_backfill):
            raise ValueError(f"{self.name} must support webhooks, backfill, or both")
        if not self.resource_name_plural:
            object.__setattr__(
                self, "resource_name_plural", f"{self.resource_name_singular}s"
            )


@dataclass(frozen=True)
class NormalizedRow:
    external_id: Any
    last_modified: datetime
    columns: Mapping[str, Any]
    data: Mapping[str, Any]


@dataclass(frozen=True)
class Page:
    items: Sequence[Mapping[str, Any]]
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class CredentialVerificationResult:
    verified: bool
    message: str = ""


@dataclass(frozen=True)
class StaleRowPolicy:
    """Which rows count as expired, and the retention band they are purged in.

    Rows are removed once ``timestamp_column`` is older than ``floor``;
    incremental runs only look back as far as ``ceiling``.
    """

    timestamp_column: str
    floor: timedelta
    ceiling: timedelta
    conditions: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class PageFetcher(Protocol):
    def fetch_page(
        self, cursor: Optional[str], *, last_backfilled: Optional[datetime]
    ) -> Page: ...


@runtime_checkable
class EnrichmentSource(Protocol):
    enrichment_required: bool

    def fetch_enrichment(self, row: NormalizedRow) -> Optional[Mapping[str, Any]]: ...


@runtime_checkable
class StaleRowSource(Protocol):
    def stale_row_policy(self) -> StaleRowPolicy: ...


@dataclass
class ReplicatorContext:
    """Collaborators a replicator may reach; resolved at the call site."""

    integrations: "IntegrationRepository"
    registry: "Registry"
    source_api: Optional["SourceApiClient"] = None
    api_base_url: str = ""


class Replicator:
    """Shared scaffolding; subclasses supply the adapter-specific pieces."""

    def __init__(
        self, service_integration: ServiceIntegration, context: ReplicatorContext
    ) -> None:
        self.service_integration = service_integration
        self.context = context

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.service_integration.opaque_id}>"

    @classmethod
    def descriptor(cls) -> Descriptor:
        raise NotImplementedError

    # ------------------------------------------------------------------ table
    def key_column(self) -> Column:
        raise NotImplementedError

    def timestamp_column_name(self) -> str:
        raise NotImplementedError

    def denormalized_columns(self) -> Sequence[Column]:
        return ()

    def store_enrichment_body(self) -> bool:
        return False

    def table_schema(self) -> TableSchema:
        sint = self.service_integration
        return TableSchema(
            table_name=sint.table_name,
            key_column=self.key_column(),
            timestamp_column=self.timestamp_column_name(),
            columns=tuple(self.denormalized_columns()),
            store_enrichment=self.store_enrichment_body(),
            index_prefix=sint.opaque_id,
        )

    def create_table(self, store: "RowStore") -> None:
        store.create_table(self.table_schema())

    def ensure_all_columns(self, store: "RowStore") -> List[str]:
        """Add columns and indexes introduced since the table was created."""
        added = store.add_missing_columns(self.table_schema())
        if added:
            logger.info(
                "added columns %s to %s", ", ".join(added), self.service_integration.table_name
            )
        return added

    # ------------------------------------------------------------------ normalization
    def resource_from_payload(self, payload: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        """Unwrap an event envelope; returning ``None`` skips the payload."""
        return payload

    def resource_to_data(self, resource: Mapping[str, Any]) -> Mapping[str, Any]:
        return resource

    def normalize(self, payload: Mapping[str, Any]) -> Optional[NormalizedRow]:
        resource = self.resource_from_payload(payload)
        if resource is None:
            return None
        key = self.key_column()
        external_id = key.extract(resource)
        if external_id is None:
            raise ValueError(f"{self.descriptor().name} payload has no '{key.name}'")
        columns: Dict[str, Any] = {}
        for col in self.denormalized_columns():
            if col.from_enrichment:
                continue
            columns[col.name] = col.extract(resource)
        ts_name = self.timestamp_column_name()
        last_modified = columns.get(ts_name)
        if last_modified is None:
            raise ValueError(f"{self.descriptor().name} payload has no '{ts_name}'")
        return NormalizedRow(
            external_id=external_id,
            last_modified=last_modified,
            columns=columns,
            data=self.resource_to_data(resource),
        )

    def enrichment_columns(self, enrichment: Mapping[str, Any]) -> Dict[str, Any]:
        values = {
            col.name: col.extract(enrichment)
            for col in self.denormalized_columns()
            if col.from_enrichment
        }
        if self.store_enrichment_body():
            values[ENRICHMENT_COLUMN] = dict(enrichment)
        return values

    # ------------------------------------------------------------------ webhooks
    def webhook_validator(self) -> WebhookValidator:
        raise NotImplementedError

    def validate_webhook(self, request: WebhookRequest) -> WebhookResponse:
        if self.service_integration.skip_webhook_verification:
            return AcceptAllValidator(status=201).validate(request)
        return self.webhook_validator().validate(request)

    @property
    def webhook_endpoint(self) -> str:
        return f"{self.context.api_base_url}{self.service_integration.unauthed_webhook_path}"

    def on_dependency_upsert(self, parent: "Replicator", diff: Any) -> None:
        """Called on each dependent after its parent upserts a webhook row."""

    # ------------------------------------------------------------------ onboarding
    def transition_url(self, field: str) -> str:
        return transition_url(self.service_integration, field, self.context.api_base_url)

    def calculate_webhook_state_machine(self) -> StateMachineStep:
        raise NotImplementedError

    def calculate_backfill_state_machine(self) -> StateMachineStep:
        step = StateMachineStep()
        step.output = f"{self.descriptor().name} does not support backfilling."
        step.error_code = "backfill_not_supported"
        return step.completed()

    def process_state_change(self, field: str, value: str) -> StateMachineStep:
        if field in WEBHOOK_FIELDS:
            calculate = self.calculate_webhook_state_machine
        elif field in BACKFILL_FIELDS:
            calculate = self.calculate_backfill_state_machine
        elif field == DEPENDENCY_CHOICE:
            calculate = self.calculate_webhook_state_machine
            field, value = "depends_on_id", self._find_dependency_candidate(value).id
        else:
            raise ValueError(f"Field '{field}' is not valid for a state change")
        self._save(**{field: value})
        return calculate()

    def clear_webhook_information(self) -> None:
        self._save(webhook_secret="")

    def clear_backfill_information(self) -> None:
        self._save(api_url="", backfill_key="", backfill_secret="")

    def _save(self, **changes: Any) -> None:
        updated = self.service_integration.with_changes(**changes)
        self.service_integration = self.context.integrations.update_integration(updated)

    # ------------------------------------------------------------------ credentials
    def verify_backfill_credentials(self) -> CredentialVerificationResult:
        """Fetch the first page read-only; report failures without raising."""
        if not isinstance(self, PageFetcher):
            raise InvalidPrecondition(f"{self.descriptor().name} cannot backfill")
        try:
            self.fetch_page(None, last_backfilled=None)
        except UpstreamFetchError as exc:
            logger.info(
                "backfill credential verification failed for %s: %s",
                self.service_integration.opaque_id,
                exc,
            )
            return CredentialVerificationResult(
                verified=False, message=self.verify_backfill_error_message(exc.status)
            )
        return CredentialVerificationResult(verified=True)

    def verify_backfill_error_message(self, status: Optional[int]) -> str:
        return (
            "Something is wrong with your configuration. "
            "Please look over the instructions and try again."
        )

    def reprompt_on_failed_verification(
        self, step: StateMachineStep, *, field: str, prompt: str, secret: bool = False
    ) -> Optional[StateMachineStep]:
        """Verify credentials; on failure clear them and re-prompt ``field``."""
        result = self.verify_backfill_credentials()
        if result.verified:
            return None
        self.clear_backfill_information()
        step.output = result.message
        return step.prompting(prompt, post_to_url=self.transition_url(field), secret=secret)

    # ------------------------------------------------------------------ dependencies
    def dependency_descriptor(self) -> Optional[Descriptor]:
        name = self.descriptor().dependency_name
        if name is None:
            return None
        return self.context.registry.registered_or_raise(name)

    def dependency_candidates(self) -> List[ServiceIntegration]:
        dependency = self.descriptor().dependency_name
        if dependency is None:
            return []
        return self.context.integrations.find_integrations(
            self.service_integration.organization_id, service_name=dependency
        )

    def _find_dependency_candidate(self, value: str) -> ServiceIntegration:
        index = (int(value) if value.strip() else 1) - 1
        candidates = self.dependency_candidates()
        if not candidates:
            raise InvalidPrecondition("no dependency candidates")
        if index < 0 or index >= len(candidates):
            raise ValueError(f"'{value}' is not a valid dependency")
        return candidates[index]

    def calculate_dependency_state_machine_step(
        self, dependency_help: str = ""
    ) -> Optional[StateMachineStep]:
        """Prompt for the parent integration; ``None`` once one is linked."""
        dependency = self.dependency_descriptor()
        if dependency is None:
            raise InvalidPrecondition(f"{self.descriptor().name} does not have a dependency")
        if self.service_integration.depends_on_id is not None:
            return None
        step = StateMachineStep()
        candidates = self.dependency_candidates()
        if not candidates:
            step.output = (
                f"This integration requires {dependency.resource_name_plural} to sync.\n\n"
                f"You don't have any {dependency.resource_name_singular} integrations yet. "
                f"Create a {dependency.name} integration first, then come back."
            )
            step.error_code = "no_candidate_dependency"
            return step.completed()
        choices = "\n".join(
            f"{idx} - {sint.table_name}" for idx, sint in enumerate(candidates, start=1)
        )
        help_text = f"\n{dependency_help}\n" if dependency_help else ""
        step.output = (
            f"This integration requires {dependency.resource_name_plural} to sync.\n"
            f"{help_text}\n"
            f"Enter the number for the {dependency.resource_name_singular} integration "
            "you want to use, or leave blank to choose the first option.\n\n"
            f"{choices}\n"
        )
        return step.prompting(
            "Parent integration number", post_to_url=self.transition_url(DEPENDENCY_CHOICE)
        )

    def require_dependency(self) -> Optional[ServiceIntegration]:
        """Return the parent integration, or raise when a required one is absent."""
        dependency = self.descriptor().dependency_name
        if dependency is None:
            return None
        sint = self.service_integration
        if sint.depends_on_id is None:
            raise DependencyMissing(
                f"{self.descriptor().name} integration {sint.opaque_id} requires a "
                f"{dependency} integration, but none is linked"
            )
        parent = self.context.integrations.get_integration(sint.depends_on_id)
        if parent.service_name != dependency:
            raise DependencyMissing(
                f"{self.descriptor().name} integration {sint.opaque_id} is linked to "
                f"{parent.service_name}, expected {dependency}"
            )
        return parent


__all__ = [
    "CredentialVerificationResult",
    "Descriptor",
    "EnrichmentSource",
    "NormalizedRow",
    "Page",
    "PageFetcher",
    "Replicator",
    "ReplicatorContext",
    "StaleRowPolicy",
    "StaleRowSource",
]
