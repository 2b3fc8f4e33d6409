"""Inbound webhook requests, responses and the validation variants."""

from __future__ import annotations

import base64
import hashlib
import hmac
import ipaddress
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence, Tuple, Union

from ..errors import ValidationRejected

logger = logging.getLogger(__name__)

MISSING_SIGNATURE = "missing_signature"
MISSING_NONCE = "missing_nonce"
INVALID_SIGNATURE = "invalid_signature"
ADDRESS_NOT_ALLOWED = "address_not_allowed"
MISSING_SECRET = "missing_secret"
INVALID_SECRET = "invalid_secret"

REJECTION_REASONS = frozenset(
    {
        MISSING_SIGNATURE,
        MISSING_NONCE,
        INVALID_SIGNATURE,
        ADDRESS_NOT_ALLOWED,
        MISSING_SECRET,
        INVALID_SECRET,
    }
)


@dataclass(frozen=True)
class WebhookRequest:
    """Transport-neutral view of an inbound webhook call."""

    method: str = "POST"
    path: str = "/"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Union[bytes, str] = b""
    remote_addr: str = ""

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "WebhookRequest":
        """Build a request around a JSON document, as backfills do."""
        return cls(
            headers={"Content-Type": "application/json"},
            body=json.dumps(body).encode("utf-8"),
        )

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def raw_body(self) -> bytes:
        if isinstance(self.body, bytes):
            return self.body
        return self.body.encode("utf-8")

    def json(self) -> Any:
        return json.loads(self.raw_body.decode("utf-8") or "null")


@dataclass(frozen=True)
class WebhookResponse:
    """Outcome of validation (and, later, of processing) for the transport."""

    status: int
    reason: str = ""
    body: Mapping[str, Any] = field(default_factory=lambda: {"o": "k"})

    @property
    def accepted(self) -> bool:
        return self.status < 400

    @classmethod
    def ok(cls, status: int = 202) -> "WebhookResponse":
        return cls(status=status)

    @classmethod
    def reject(cls, reason: str, status: int = 401) -> "WebhookResponse":
        if reason not in REJECTION_REASONS:
            raise ValueError(f"unknown rejection reason: {reason}")
        return cls(status=status, reason=reason, body={"message": reason})

    def raise_for_rejection(self) -> "WebhookResponse":
        if not self.accepted:
            raise ValidationRejected(self.reason, self.status)
        return self


class WebhookValidator(Protocol):
    def validate(self, request: WebhookRequest) -> WebhookResponse: ...


class AcceptAllValidator:
    """Accepts every request; for origin-trusted or synchronous sources."""

    def __init__(self, status: int = 202) -> None:
        self._status = status

    def validate(self, request: WebhookRequest) -> WebhookResponse:
        return WebhookResponse.ok(self._status)


class SharedSecretValidator:
    """Compares a header against the integration's shared secret."""

    def __init__(self, *, header: str, secret: str) -> None:
        self._header = header
        self._secret = secret

    def validate(self, request: WebhookRequest) -> WebhookResponse:
        presented = request.header(self._header)
        if not presented:
            return WebhookResponse.reject(MISSING_SECRET)
        if not self._secret or not hmac.compare_digest(
            presented.encode("utf-8"), self._secret.encode("utf-8")
        ):
            return WebhookResponse.reject(INVALID_SECRET)
        return WebhookResponse.ok()


def canonical_request(request: WebhookRequest) -> bytes:
    """``METHOD`` newline ``path`` newline the exact body bytes, as the sender signs it."""
    head = f"{request.method.upper()}\n{request.path}\n".encode("utf-8")
    return head + request.raw_body


def compute_signature(
    secret: str, request: WebhookRequest, nonce: str, digestmod=hashlib.sha256
) -> str:
    message = canonical_request(request) + b"." + nonce.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, digestmod).digest()
    return base64.b64encode(digest).decode("ascii")


class HmacNonceValidator:
    """Verifies an HMAC over the canonical request plus a sender nonce.

    The signature header may carry several comma separated signatures (key
    rotation); one must match exactly. Timestamps play no part.
    """

    def __init__(
        self,
        *,
        secret: str,
        signature_header: str = "X-Signature",
        nonce_header: str = "X-Signature-Nonce",
        digestmod=hashlib.sha256,
    ) -> None:
        self._secret = secret
        self._signature_header = signature_header
        self._nonce_header = nonce_header
        self._digestmod = digestmod

    def validate(self, request: WebhookRequest) -> WebhookResponse:
        if not self._secret:
            return WebhookResponse.reject(MISSING_SECRET)
        signature = request.header(self._signature_header)
        if not signature:
            return WebhookResponse.reject(MISSING_SIGNATURE)
        nonce = request.header(self._nonce_header)
        if not nonce:
            return WebhookResponse.reject(MISSING_NONCE)
        expected = compute_signature(self._secret, request, nonce, self._digestmod)
        candidates = [s.strip() for s in signature.split(",") if s.strip()]
        for candidate in candidates:
            if hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
                return WebhookResponse.ok()
        return WebhookResponse.reject(INVALID_SIGNATURE)


Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class AddressAllowListValidator:
    """Accepts requests whose source or forwarded-for address is in a block."""

    def __init__(self, networks: Iterable[str], *, forwarded_header: str = "X-Forwarded-For") -> None:
        self._networks: Tuple[Network, ...] = tuple(
            ipaddress.ip_network(block, strict=False) for block in networks
        )
        self._forwarded_header = forwarded_header

    def _candidate_addresses(self, request: WebhookRequest) -> Sequence[str]:
        found = []
        if request.remote_addr:
            found.append(request.remote_addr)
        forwarded = request.header(self._forwarded_header)
        if forwarded:
            found.extend(part.strip() for part in forwarded.split(",") if part.strip())
        return found

    def validate(self, request: WebhookRequest) -> WebhookResponse:
        for candidate in self._candidate_addresses(request):
            try:
                address = ipaddress.ip_address(candidate)
            except ValueError:
                logger.debug("ignoring unparseable address %r", candidate)
                continue
            if any(address in network for network in self._networks):
                return WebhookResponse.ok()
        return WebhookResponse.reject(ADDRESS_NOT_ALLOWED, status=403)


__all__ = [
    "ADDRESS_NOT_ALLOWED",
    "AcceptAllValidator",
    "AddressAllowListValidator",
    "HmacNonceValidator",
    "INVALID_SECRET",
    "INVALID_SIGNATURE",
    "MISSING_NONCE",
    "MISSING_SECRET",
    "MISSING_SIGNATURE",
    "SharedSecretValidator",
    "WebhookRequest",
    "WebhookResponse",
    "WebhookValidator",
    "canonical_request",
    "compute_signature",
]
