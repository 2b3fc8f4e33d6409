"""Internal replicators used to exercise the engine end to end."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, ClassVar, Mapping, Optional, Sequence

from ..errors import UpstreamFetchError
from .base import (
    Descriptor,
    NormalizedRow,
    Page,
    Replicator,
    StaleRowPolicy,
)
from .columns import TEXT, TIMESTAMP, Column, parse_timestamp
from .registry import register
from .state_machine import StateMachineStep
from .webhooks import AcceptAllValidator, SharedSecretValidator, WebhookValidator

FAKE_API_URL = "https://fake-integration/"
SECRET_HEADER = "X-Fake-Secret"


class _FakeRows(Replicator):
    """Rows keyed by ``my_id`` and ordered by ``at``."""

    def key_column(self) -> Column:
        return Column("my_id", TEXT)

    def timestamp_column_name(self) -> str:
        return "at"

    def denormalized_columns(self) -> Sequence[Column]:
        return (Column("at", TIMESTAMP, index=True, converter=parse_timestamp),)


@register
class FakeReplicator(_FakeRows):
    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="fake_v1",
            resource_name_singular="Fake",
            supports_webhooks=True,
            supports_backfill=True,
            feature_roles=("internal",),
        )

    def webhook_validator(self) -> WebhookValidator:
        return SharedSecretValidator(
            header=SECRET_HEADER, secret=self.service_integration.webhook_secret
        )

    def calculate_webhook_state_machine(self) -> StateMachineStep:
        step = StateMachineStep()
        if not self.service_integration.webhook_secret:
            step.output = f"You're creating a {self.descriptor().name} service integration."
            return step.prompting(
                "fake API secret",
                post_to_url=self.transition_url("webhook_secret"),
                secret=True,
            )
        step.output = (
            "The integration creation flow is working correctly. Point webhooks at "
            f"{self.webhook_endpoint}"
        )
        return step.completed()

    def calculate_backfill_state_machine(self) -> StateMachineStep:
        step = StateMachineStep()
        if not self.service_integration.backfill_secret:
            step.output = "Now let's test the backfill flow."
            return step.prompting(
                "Paste or type a string here:",
                post_to_url=self.transition_url("backfill_secret"),
            )
        reprompt = self.reprompt_on_failed_verification(
            step, field="backfill_secret", prompt="Paste or type a string here:"
        )
        if reprompt is not None:
            return reprompt
        step.output = "The backfill flow is working correctly."
        return step.completed()

    def verify_backfill_error_message(self, status: Optional[int]) -> str:
        if status == 401:
            return "The fake API rejected that secret. Please check it and try again."
        return super().verify_backfill_error_message(status)

    def fetch_page(
        self, cursor: Optional[str], *, last_backfilled: Optional[datetime]
    ) -> Page:
        params = {"token": cursor or ""}
        if last_backfilled is not None:
            params["since"] = last_backfilled.isoformat()
        body = self.context.source_api.get_json(
            self.service_integration.api_url or FAKE_API_URL,
            params=params,
            headers={"Authorization": f"Bearer {self.service_integration.backfill_secret}"},
        )
        if not isinstance(body, list) or len(body) != 2:
            raise UpstreamFetchError("expected a 2-item array of [items, cursor]")
        items, next_cursor = body
        return Page(items=items or [], next_cursor=next_cursor or None)


@register
class FakeWithEnrichmentsReplicator(FakeReplicator):
    enrichment_required: ClassVar[bool] = False

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="fake_with_enrichments_v1",
            resource_name_singular="Enriched Fake",
            supports_webhooks=True,
            supports_backfill=True,
            feature_roles=("internal",),
        )

    def denormalized_columns(self) -> Sequence[Column]:
        return (*super().denormalized_columns(), Column("extra", TEXT, from_enrichment=True))

    def store_enrichment_body(self) -> bool:
        return True

    def fetch_enrichment(self, row: NormalizedRow) -> Optional[Mapping[str, Any]]:
        return self.context.source_api.get_json(f"{FAKE_API_URL}enrichment/{row.external_id}")


@register
class FakeDependentReplicator(FakeReplicator):
    on_dependency_upsert_callback: ClassVar[Optional[Callable[..., None]]] = None

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="fake_dependent_v1",
            resource_name_singular="FakeDependent",
            supports_webhooks=True,
            supports_backfill=True,
            dependency_name="fake_v1",
            feature_roles=("internal",),
        )

    def on_dependency_upsert(self, parent: Replicator, diff: Any) -> None:
        callback = type(self).on_dependency_upsert_callback
        if callback is not None:
            callback(self, parent, diff)

    def calculate_webhook_state_machine(self) -> StateMachineStep:
        step = self.calculate_dependency_state_machine_step(
            dependency_help="This is where the relationship to the parent is explained."
        )
        if step is not None:
            return step
        return super().calculate_webhook_state_machine()


@register
class FakeStaleRowReplicator(_FakeRows):
    """Rows with a ``cancelled`` status expire once they are five days old."""

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="fake_stale_row_v1",
            resource_name_singular="FakeStaleRow",
            supports_webhooks=True,
            feature_roles=("internal",),
        )

    def denormalized_columns(self) -> Sequence[Column]:
        return (*super().denormalized_columns(), Column("status", TEXT, index=True))

    def webhook_validator(self) -> WebhookValidator:
        return AcceptAllValidator()

    def calculate_webhook_state_machine(self) -> StateMachineStep:
        step = StateMachineStep()
        step.output = f"Send rows to {self.webhook_endpoint}"
        return step.completed()

    def stale_row_policy(self) -> StaleRowPolicy:
        return StaleRowPolicy(
            timestamp_column="at",
            floor=timedelta(days=5),
            ceiling=timedelta(days=10),
            conditions={"status": "cancelled"},
        )


__all__ = [
    "FAKE_API_URL",
    "FakeDependentReplicator",
    "FakeReplicator",
    "FakeStaleRowReplicator",
    "FakeWithEnrichmentsReplicator",
    "SECRET_HEADER",
]
