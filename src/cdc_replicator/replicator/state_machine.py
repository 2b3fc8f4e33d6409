"""Onboarding steps returned to the presentation layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

from ..models import ServiceIntegration

WEBHOOK_FIELDS = ("webhook_secret",)
BACKFILL_FIELDS = ("backfill_key", "backfill_secret", "api_url")
DEPENDENCY_CHOICE = "dependency_choice"


def transition_url(
    service_integration: ServiceIntegration, field: str, api_base_url: str = ""
) -> str:
    """URL the presentation layer posts a submitted value to."""
    path = f"{service_integration.unauthed_webhook_path}/transition/{field}"
    return f"{api_base_url.rstrip('/')}{path}"


@dataclass
class StateMachineStep:
    """What credential or step is still needed for an integration."""

    needs_input: bool = False
    prompt: str = ""
    prompt_is_secret: bool = False
    post_to_url: str = ""
    complete: bool = False
    output: str = ""
    error_code: str = ""

    def prompting(
        self, prompt: str, *, post_to_url: str, secret: bool = False
    ) -> "StateMachineStep":
        self.needs_input = True
        self.prompt = prompt
        self.prompt_is_secret = secret
        self.post_to_url = post_to_url
        self.complete = False
        return self

    def completed(self) -> "StateMachineStep":
        self.needs_input = False
        self.prompt = ""
        self.prompt_is_secret = False
        self.post_to_url = ""
        self.complete = True
        return self

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


__all__ = [
    "BACKFILL_FIELDS",
    "DEPENDENCY_CHOICE",
    "StateMachineStep",
    "WEBHOOK_FIELDS",
    "transition_url",
]
