"""Replicator contract, validators, onboarding steps and the adapter registry."""

from .base import (
    CredentialVerificationResult,
    Descriptor,
    EnrichmentSource,
    NormalizedRow,
    Page,
    PageFetcher,
    Replicator,
    ReplicatorContext,
    StaleRowPolicy,
    StaleRowSource,
)
from .columns import Column, TableSchema
from .registry import Registry, default_registry, load_replicators, register
from .state_machine import StateMachineStep
from .webhooks import WebhookRequest, WebhookResponse

__all__ = [
    "Column",
    "CredentialVerificationResult",
    "Descriptor",
    "EnrichmentSource",
    "NormalizedRow",
    "Page",
    "PageFetcher",
    "Registry",
    "Replicator",
    "ReplicatorContext",
    "StaleRowPolicy",
    "StaleRowSource",
    "StateMachineStep",
    "TableSchema",
    "WebhookRequest",
    "WebhookResponse",
    "default_registry",
    "load_replicators",
    "register",
]
